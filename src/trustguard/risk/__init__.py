"""Risk assessment for TrustGuard."""

from .engine import FactorContribution, RiskEngine, RiskLevel, RiskResult, level_for_score

__all__ = ["FactorContribution", "RiskEngine", "RiskLevel", "RiskResult", "level_for_score"]
