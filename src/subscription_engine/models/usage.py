"""Per-user feature usage counters."""
from decimal import Decimal

from sqlalchemy import CheckConstraint, Column, Integer, String, Numeric, DateTime, ForeignKey, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from subscription_engine.models.base import Base


class FeatureUsage(Base):
    """
    Usage counter for one (user, feature) pair.

    ``usage_count`` only moves upwards between resets.
    """

    __tablename__ = "feature_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "feature_id", name="uq_feature_usage_user_feature"),
        CheckConstraint("usage_count >= 0", name="ck_feature_usage_count_non_negative"),
    )

    user_id = Column(Integer, nullable=False, index=True)
    feature_id = Column(Uuid, ForeignKey("features.id", ondelete="CASCADE"), nullable=False, index=True)
    usage_count = Column(Integer, nullable=False, default=0)
    reset_date = Column(DateTime, nullable=True)  # NULL means the counter never resets
    last_used = Column(DateTime, nullable=True)

    # Token metering for AI-backed features
    ai_model_type = Column(String, nullable=True)
    ai_token_count = Column(Integer, nullable=False, default=0)
    ai_cost = Column(Numeric(12, 4), nullable=False, default=Decimal("0"))

    feature = relationship("Feature", lazy="joined")

    def __repr__(self) -> str:
        """String representation."""
        return f"<FeatureUsage(user_id={self.user_id}, feature_id={self.feature_id}, count={self.usage_count})>"
