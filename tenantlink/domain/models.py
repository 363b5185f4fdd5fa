from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the schema also runs on SQLite.
_JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
_BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    # Normalize timestamps to aware UTC on both write and read; SQLite drops tzinfo.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Tax id is optional but unique when present.
    vat: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    # pending until a signup is approved; never hard-deleted while access rows exist.
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    settings_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # Platform staff (super admins) are not bound to a company.
    company_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("companies.id"), index=True, nullable=True
    )
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # super_admin | company_admin | user
    role: Mapped[str] = mapped_column(String, default="user")
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # Keep a short prefix for operator display without exposing the secret.
    key_prefix: Mapped[str] = mapped_column(String)
    # Store only the hashed key to avoid plaintext credentials at rest.
    key_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Stable external identifier; used as the SSO audience.
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # api | iframe | hybrid
    integration_type: Mapped[str] = mapped_column(String, default="api", index=True)
    api_base_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # bearer | basic | oauth2 | custom
    api_auth_type: Mapped[str] = mapped_column(String, default="bearer")
    # Encrypted at rest; decrypted only for the duration of an outbound call.
    api_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_signup_endpoint: Mapped[str | None] = mapped_column(String, nullable=True)
    admin_panel_url: Mapped[str | None] = mapped_column(String, nullable=True)
    iframe_width: Mapped[str] = mapped_column(String, default="100%")
    iframe_height: Mapped[str] = mapped_column(String, default="100vh")
    iframe_sandbox: Mapped[str | None] = mapped_column(String, nullable=True)
    sso_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    # SSO token lifetime in seconds.
    sso_token_expiry: Mapped[int] = mapped_column(Integer, default=3600)
    sso_redirect_url: Mapped[str | None] = mapped_column(String, nullable=True)
    sso_callback_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # Optional registry key overriding slug-based driver resolution.
    driver_key: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class SignupRequest(Base):
    __tablename__ = "signup_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, ForeignKey("companies.id"), index=True)
    requested_projects: Mapped[list[str]] = mapped_column(_JsonType)
    company_data: Mapped[dict[str, Any]] = mapped_column(_JsonType)
    contact_person: Mapped[dict[str, Any]] = mapped_column(_JsonType)
    # pending | approved | rejected | partial_approved
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Per-project outcome of the last orchestration attempt.
    api_calls_log: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class CompanyProjectAccess(Base):
    __tablename__ = "company_project_access"
    __table_args__ = (
        UniqueConstraint("company_id", "project_id", name="uq_company_project_access_pair"),
        Index("ix_cpa_cb_state_reset", "circuit_breaker_state", "circuit_breaker_reset_at"),
        Index("ix_cpa_status_retry", "status", "auto_retry", "retry_count"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, ForeignKey("companies.id"), index=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), index=True)
    # pending | active | suspended | revoked | partial_failed
    status: Mapped[str] = mapped_column(String, default="pending")
    # Map of named secrets, each value encrypted individually.
    api_credentials: Mapped[dict[str, str] | None] = mapped_column(_JsonType, nullable=True)
    external_company_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_account_data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    signup_request_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("signup_requests.id"), nullable=True, index=True
    )
    # Snapshot of company/contact data so retries do not depend on the request row.
    signup_request_data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    # Cleared by configuration errors; the sweep skips the entry until an operator retries it.
    auto_retry: Mapped[bool] = mapped_column(Boolean, default=True)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, default=60)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, default=1000)
    # closed | open | half_open
    circuit_breaker_state: Mapped[str] = mapped_column(String, default="closed")
    circuit_breaker_failures: Mapped[int] = mapped_column(Integer, default=0)
    circuit_breaker_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), onupdate=func.now()
    )


class CompanyProjectUser(Base):
    __tablename__ = "company_project_users"
    __table_args__ = (
        UniqueConstraint("access_id", "user_id", name="uq_cpu_access_user"),
        UniqueConstraint("access_id", "external_user_id", name="uq_cpu_access_external_user"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    access_id: Mapped[str] = mapped_column(
        String, ForeignKey("company_project_access.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    external_user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_username: Mapped[str | None] = mapped_column(String, nullable=True)
    external_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # active | suspended | revoked
    status: Mapped[str] = mapped_column(String, default="active")
    last_sso_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class SSOTokenUsage(Base):
    __tablename__ = "sso_token_usage"
    __table_args__ = (
        Index("ix_sso_token_usage_expires_status", "expires_at", "status"),
    )

    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    # The persisted row, not the token, is the source of truth for replay detection.
    jti: Mapped[str] = mapped_column(String, unique=True, index=True)
    access_id: Mapped[str] = mapped_column(
        String, ForeignKey("company_project_access.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), index=True)
    issued_at: Mapped[datetime] = mapped_column(UTCDateTime())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # issued | used | expired | revoked
    status: Mapped[str] = mapped_column(String, default="issued")
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class ApiIntegrationLog(Base):
    __tablename__ = "api_integration_logs"
    __table_args__ = (
        Index("ix_api_integration_logs_project_created", "project_id", "created_at"),
        Index("ix_api_integration_logs_access_created", "access_id", "created_at"),
    )

    # Append-only audit of outbound calls; payloads are never stored.
    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    access_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("company_project_access.id"), nullable=True
    )
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"))
    user_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(String, nullable=True)
    method: Mapped[str | None] = mapped_column(String, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limit_hit: Mapped[bool] = mapped_column(Boolean, default=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(_BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), index=True)
    # Null for pre-auth and platform-level events.
    company_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), server_default=func.now())
