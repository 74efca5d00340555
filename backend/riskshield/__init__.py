"""RiskShield - Subcontractor insurance compliance engine"""
__version__ = "1.0.0"
