"""initial schema: sessions, device trust, security events, alerts, audit chain

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
import uuid

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

UUID = postgresql.UUID(as_uuid=True)
JSONB = postgresql.JSONB()

DEFAULT_ALERT_RULES = (
    {
        "name": "MULTIPLE_ADMIN_MFA_FAILURES",
        "description": "Repeated MFA challenge failures for a single admin account.",
        "severity": "high",
        "source_type": "admin_security_events",
        "condition": {
            "event_type": "MFA_CHALLENGE_FAILED",
            "window_minutes": 15,
            "threshold": 5,
            "group_by": "admin_user_id",
        },
    },
    {
        "name": "DEVICE_CONFLICT_STORM",
        "description": "A field user keeps logging in from different devices.",
        "severity": "high",
        "source_type": "device_lock_conflicts",
        "condition": {"window_minutes": 30, "threshold": 3, "group_by": "user_id"},
    },
    {
        "name": "OTP_ABUSE_SINGLE_NUMBER",
        "description": "High OTP request volume for one phone number.",
        "severity": "medium",
        "source_type": "login_otp_requests",
        "condition": {"window_minutes": 10, "threshold": 10, "group_by": "phone_e164"},
    },
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("phone_e164", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=20), nullable=False, server_default="customer"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("mfa_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.CheckConstraint(
            "role IN ('admin', 'manager', 'technician', 'transporter', 'customer')",
            name="chk_user_role",
        ),
        sa.CheckConstraint("phone_e164 IS NOT NULL OR email IS NOT NULL", name="chk_user_identifier"),
    )
    op.create_index("ix_users_phone_e164", "users", ["phone_e164"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "user_sessions",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("device_id", sa.String(length=64), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_token_hash", sa.String(length=64), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revoked_reason", sa.String(length=50), nullable=True),
        sa.Column("logged_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("mfa_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replaced_by_session_id", UUID, nullable=True),
        sa.CheckConstraint(
            "role IN ('admin', 'manager', 'technician', 'transporter', 'customer')",
            name="chk_user_session_role",
        ),
        sa.UniqueConstraint("refresh_token_hash", name="uq_user_sessions_refresh_token_hash"),
    )
    op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"])
    op.create_index("ix_user_sessions_device_id", "user_sessions", ["device_id"])
    op.create_index("ix_user_sessions_created_at", "user_sessions", ["created_at"])
    op.create_index("ix_user_sessions_expires_at", "user_sessions", ["expires_at"])
    op.create_index("ix_user_sessions_user_role_active", "user_sessions", ["user_id", "role", "revoked"])

    op.create_table(
        "device_locks",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("device_id", sa.String(length=64), nullable=False),
        sa.Column("override_allowed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("user_id", name="uq_device_locks_user_id"),
    )

    op.create_table(
        "device_conflicts",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("old_device", sa.String(length=64), nullable=False),
        sa.Column("new_device", sa.String(length=64), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("resolution", sa.String(length=20), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("resolution IN ('rejected', 'takeover')", name="chk_device_conflict_resolution"),
    )
    op.create_index("ix_device_conflicts_user_id", "device_conflicts", ["user_id"])
    op.create_index("ix_device_conflicts_detected_at", "device_conflicts", ["detected_at"])

    op.create_table(
        "security_events",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("actor_user_id", UUID, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("severity IN ('info', 'warning', 'error')", name="chk_security_event_severity"),
    )
    op.create_index("ix_security_events_actor_user_id", "security_events", ["actor_user_id"])
    op.create_index("ix_security_events_event_type", "security_events", ["event_type"])
    op.create_index("ix_security_events_created_at", "security_events", ["created_at"])

    rules_table = op.create_table(
        "security_alert_rules",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="medium"),
        sa.Column("source_type", sa.String(length=50), nullable=False),
        sa.Column("condition", JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("name", name="uq_security_alert_rules_name"),
        sa.CheckConstraint("severity IN ('low', 'medium', 'high', 'critical')", name="chk_alert_rule_severity"),
    )

    op.create_table(
        "security_alerts",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("rule_id", UUID, sa.ForeignKey("security_alert_rules.id"), nullable=False),
        sa.Column("source_type", sa.String(length=50), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("group_key", sa.String(length=255), nullable=False),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", UUID, sa.ForeignKey("users.id"), nullable=True),
        sa.CheckConstraint("status IN ('open', 'resolved')", name="chk_security_alert_status"),
    )
    op.create_index("ix_security_alerts_rule_id", "security_alerts", ["rule_id"])
    op.create_index("ix_security_alerts_created_at", "security_alerts", ["created_at"])
    op.create_index("ix_security_alerts_rule_key_status", "security_alerts", ["rule_id", "group_key", "status"])

    op.create_table(
        "audit_log_entries",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("seq", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_user_id", UUID, nullable=True),
        sa.Column("actor_role", sa.String(length=20), nullable=True),
        sa.Column("session_id", UUID, nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("severity", sa.String(length=20), nullable=False, server_default="info"),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("prev_hash", sa.String(length=64), nullable=False),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.UniqueConstraint("seq", name="uq_audit_log_entries_seq"),
        sa.CheckConstraint(
            "severity IN ('info', 'warning', 'high', 'critical')",
            name="chk_audit_log_severity",
        ),
    )
    op.create_index("ix_audit_log_entries_created_at", "audit_log_entries", ["created_at"])
    op.create_index("ix_audit_log_entries_actor_user_id", "audit_log_entries", ["actor_user_id"])
    op.create_index("ix_audit_log_entries_event_type", "audit_log_entries", ["event_type"])

    # Audit rows are append-only at the database level as well.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION audit_log_entries_block_mutation() RETURNS trigger AS $$
        BEGIN
          RAISE EXCEPTION 'audit_log_entries is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_audit_log_entries_append_only
        BEFORE UPDATE OR DELETE ON audit_log_entries
        FOR EACH ROW EXECUTE FUNCTION audit_log_entries_block_mutation();
        """
    )

    head_table = op.create_table(
        "audit_chain_head",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("last_seq", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("last_hash", sa.String(length=64), nullable=True),
        sa.CheckConstraint("id = 1", name="chk_audit_chain_head_singleton"),
    )

    op.create_table(
        "login_otp_requests",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("phone_e164", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("otp_hash", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="issued"),
        sa.Column("channel", sa.String(length=20), nullable=False, server_default="whatsapp"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("device_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("channel IN ('whatsapp', 'sms', 'email')", name="chk_login_otp_channel"),
        sa.CheckConstraint("status IN ('issued', 'rate_limited')", name="chk_login_otp_status"),
        sa.CheckConstraint(
            "(phone_e164 IS NOT NULL AND email IS NULL) OR (phone_e164 IS NULL AND email IS NOT NULL)",
            name="chk_login_otp_identifier",
        ),
        sa.CheckConstraint("status <> 'issued' OR otp_hash IS NOT NULL", name="chk_login_otp_hash"),
    )
    op.create_index("ix_login_otp_requests_phone_e164", "login_otp_requests", ["phone_e164"])
    op.create_index("ix_login_otp_requests_email", "login_otp_requests", ["email"])
    op.create_index("ix_login_otp_requests_created_at", "login_otp_requests", ["created_at"])

    op.create_table(
        "admin_mfa_factors",
        sa.Column("id", UUID, primary_key=True, nullable=False),
        sa.Column("user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("secret_encrypted", sa.Text(), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("setup_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.UniqueConstraint("user_id", name="uq_admin_mfa_factors_user_id"),
    )

    op.bulk_insert(head_table, [{"id": 1, "last_seq": 0, "last_hash": None}])
    op.bulk_insert(
        rules_table,
        [
            {
                "id": uuid.uuid4(),
                "name": rule["name"],
                "description": rule["description"],
                "is_active": True,
                "severity": rule["severity"],
                "source_type": rule["source_type"],
                "condition": rule["condition"],
            }
            for rule in DEFAULT_ALERT_RULES
        ],
    )


def downgrade() -> None:
    op.drop_table("admin_mfa_factors")
    op.drop_index("ix_login_otp_requests_created_at", table_name="login_otp_requests")
    op.drop_index("ix_login_otp_requests_email", table_name="login_otp_requests")
    op.drop_index("ix_login_otp_requests_phone_e164", table_name="login_otp_requests")
    op.drop_table("login_otp_requests")
    op.drop_table("audit_chain_head")
    op.execute("DROP TRIGGER IF EXISTS trg_audit_log_entries_append_only ON audit_log_entries")
    op.execute("DROP FUNCTION IF EXISTS audit_log_entries_block_mutation()")
    op.drop_index("ix_audit_log_entries_event_type", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_actor_user_id", table_name="audit_log_entries")
    op.drop_index("ix_audit_log_entries_created_at", table_name="audit_log_entries")
    op.drop_table("audit_log_entries")
    op.drop_index("ix_security_alerts_rule_key_status", table_name="security_alerts")
    op.drop_index("ix_security_alerts_created_at", table_name="security_alerts")
    op.drop_index("ix_security_alerts_rule_id", table_name="security_alerts")
    op.drop_table("security_alerts")
    op.drop_table("security_alert_rules")
    op.drop_index("ix_security_events_created_at", table_name="security_events")
    op.drop_index("ix_security_events_event_type", table_name="security_events")
    op.drop_index("ix_security_events_actor_user_id", table_name="security_events")
    op.drop_table("security_events")
    op.drop_index("ix_device_conflicts_detected_at", table_name="device_conflicts")
    op.drop_index("ix_device_conflicts_user_id", table_name="device_conflicts")
    op.drop_table("device_conflicts")
    op.drop_table("device_locks")
    op.drop_index("ix_user_sessions_user_role_active", table_name="user_sessions")
    op.drop_index("ix_user_sessions_expires_at", table_name="user_sessions")
    op.drop_index("ix_user_sessions_created_at", table_name="user_sessions")
    op.drop_index("ix_user_sessions_device_id", table_name="user_sessions")
    op.drop_index("ix_user_sessions_user_id", table_name="user_sessions")
    op.drop_table("user_sessions")
    op.drop_index("ix_users_role", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_phone_e164", table_name="users")
    op.drop_table("users")
