"""
SQLAlchemy ORM schema module
Importing this package registers every table on Base.metadata.
"""
from hestia.db.schemas.policy import Policy
from hestia.db.schemas.actor import ACTOR_CLASSES, Actor, Aval, JointObligor, Landlord, Tenant
from hestia.db.schemas.document import ActorDocument, ActorReference
from hestia.db.schemas.investigation import Investigation
from hestia.db.schemas.payment import Payment
from hestia.db.schemas.contract import Contract
from hestia.db.schemas.activity import PolicyActivity

__all__ = [
    "Policy",
    "Actor",
    "Landlord",
    "Tenant",
    "JointObligor",
    "Aval",
    "ACTOR_CLASSES",
    "ActorDocument",
    "ActorReference",
    "Investigation",
    "Payment",
    "Contract",
    "PolicyActivity",
]
