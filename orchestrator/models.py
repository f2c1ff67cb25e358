from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.sql import func
from orchestrator.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    points = Column(Integer, nullable=False, default=0)
    uses_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SubscriptionCreditPool(Base):
    """Pre-paid generation credits, drawn down before the point balance."""
    __tablename__ = "subscription_credit_pools"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    plan_name = Column(String)
    status = Column(String, nullable=False, default="active")  # active | expired | cancelled
    credits_allocated = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    end_date = Column(DateTime(timezone=True))

    @property
    def credits_remaining(self) -> int:
        return max(0, (self.credits_allocated or 0) - (self.credits_used or 0))


class BackendConfig(Base):
    """
    One external generation backend.

    At most one row per scope has active=True; only
    BackendRegistry.set_active is allowed to flip that flag.

    total_calls, success_rate and avg_latency_ms are best-effort telemetry:
    they are updated with an unlocked read-modify-write and concurrent
    calls can lose increments.
    """
    __tablename__ = "backend_configs"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    provider = Column(String, nullable=False)  # a ProviderFamily value
    scope = Column(String, nullable=False, default="image")
    active = Column(Boolean, nullable=False, default=False)
    enabled = Column(Boolean, nullable=False, default=True)

    api_key = Column(String)
    model = Column(String)
    endpoint = Column(String)
    params = Column(JSON, default=dict)

    cost_per_image = Column(Integer, nullable=False, default=1)

    total_calls = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=100.0)
    avg_latency_ms = Column(Float, nullable=False, default=0.0)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class GuardRule(Base):
    __tablename__ = "guard_rules"

    id = Column(Integer, primary_key=True, index=True)
    rule_name = Column(String, nullable=False)
    rule_type = Column(String, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    hidden_prompt = Column(Text, nullable=False, default="")
    apply_to = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Template(Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    prompt = Column(Text)
    creator_id = Column(Integer, ForeignKey("users.id"))
    use_count = Column(Integer, nullable=False, default=0)


class GenerationRecord(Base):
    """
    One successful generation. prompt holds the user-visible prompt only,
    never the guard rule text that was sent to the backend.
    """
    __tablename__ = "generation_records"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"))
    prompt = Column(Text, nullable=False)
    negative_prompt = Column(Text)
    reference_images = Column(JSON, default=list)
    image_url = Column(String, nullable=False)
    quality = Column(String, nullable=False)
    aspect_ratio = Column(String, nullable=False)
    points_spent = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="completed")
    backend_key = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    is_favorite = Column(Boolean, nullable=False, default=False)
    download_count = Column(Integer, nullable=False, default=0)
    share_count = Column(Integer, nullable=False, default=0)


class LedgerEntry(Base):
    """Append-only balance event. Rows are never updated."""
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    amount = Column(Integer, nullable=False)
    direction = Column(String, nullable=False)  # debit | credit
    description = Column(String)
    gateway = Column(String, nullable=False, default="System")
    status = Column(String, nullable=False, default="success")
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CreatorEarning(Base):
    __tablename__ = "creator_earnings"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    amount = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
