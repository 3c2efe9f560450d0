"""
Vendorflow — vendor onboarding task queue and lifecycle engine.
"""

__version__ = "0.1.0"
