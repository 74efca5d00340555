"""RiskShield - Services"""
