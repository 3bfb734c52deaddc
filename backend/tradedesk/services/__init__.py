"""
Background services: broker token lifecycle and broker reconciliation.
"""
