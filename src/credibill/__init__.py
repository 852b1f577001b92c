"""
CrediBill - multi-tenant subscription billing engine
"""
__version__ = "0.1.0"
