"""
TrustGuard: Zero-Trust Access Control and Risk Scoring Engine

Policy-driven access decisions, composite risk scoring, continuous
trust monitoring, and violation alerting.
"""

__version__ = "0.1.0"
__author__ = "Corey A. Wade"
