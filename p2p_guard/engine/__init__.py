"""Decision engine for peer-to-peer fiat/stablecoin trades.

The package scores orders, sizes LP collateral, keeps rolling per-user
activity counters, matches orders to liquidity providers and resolves
disputes into settlement commands.
"""

from .activity_store import ActivityStore, FileActivityStore, InMemoryActivityStore, UserHistory
from .disputes import (
    ArbitratorProfile,
    Decision,
    Dispute,
    DisputeRegistry,
    DisputeResolver,
    DisputeStatus,
    DisputeTier,
    Resolution,
    ResolutionActions,
)
from .lp_matcher import LiquidityProvider, LPMatcher, MatchResult
from .metrics import MetricRegistry
from .policy import RiskLevel, default_policy
from .risk_scorer import OrderAnalysisData, RequiredAction, RiskAssessment, RiskScorer
from .settlement import LoggingSettlementGateway, SettlementExecutor, SettlementGateway
from .stake import Penalty, SlashReason, StakeCalculator, StakeRequirement
from .service import OrderDecision, TradeGuardEngine

__all__ = [
    "ActivityStore",
    "FileActivityStore",
    "InMemoryActivityStore",
    "UserHistory",
    "ArbitratorProfile",
    "Decision",
    "Dispute",
    "DisputeRegistry",
    "DisputeResolver",
    "DisputeStatus",
    "DisputeTier",
    "Resolution",
    "ResolutionActions",
    "LiquidityProvider",
    "LPMatcher",
    "MatchResult",
    "MetricRegistry",
    "RiskLevel",
    "default_policy",
    "OrderAnalysisData",
    "RequiredAction",
    "RiskAssessment",
    "RiskScorer",
    "LoggingSettlementGateway",
    "SettlementExecutor",
    "SettlementGateway",
    "Penalty",
    "SlashReason",
    "StakeCalculator",
    "StakeRequirement",
    "OrderDecision",
    "TradeGuardEngine",
]
