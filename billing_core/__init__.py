"""
Billing core - mobile-money payment reconciliation, bill-assignment display
and SMS unit counting for the membership portal.
"""

__version__ = "0.1.0"
