"""
Hestia Rental Guarantee Service
===============================
Rental-guarantee policy lifecycle backend: actors, investigation,
contracts and payments for a single policy aggregate.
"""

__version__ = "1.0.0"
