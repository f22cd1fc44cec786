"""Postgres schema bootstrap and the sample account seed."""

from __future__ import annotations

import logging
from datetime import date

from psycopg_pool import ConnectionPool

from .domain.contracts import CreateAccountInput
from .domain.errors import ConflictError
from .domain.service import AccountService

logger = logging.getLogger(__name__)

SCHEMA_DDL = """
DO $$
BEGIN
    CREATE TYPE user_status AS ENUM ('active', 'inactive', 'suspended', 'deleted');
EXCEPTION
    WHEN duplicate_object THEN NULL;
END
$$;

CREATE TABLE IF NOT EXISTS users (
    account_id UUID PRIMARY KEY,
    email VARCHAR(255) NOT NULL,
    username VARCHAR(50) NOT NULL,
    credential_hash VARCHAR(255) NOT NULL,
    first_name VARCHAR(50) NOT NULL,
    last_name VARCHAR(50) NOT NULL,
    date_of_birth DATE NOT NULL,
    phone_number VARCHAR(20),
    status user_status NOT NULL DEFAULT 'active',
    failed_login_attempts INT NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
    last_login_at TIMESTAMP WITH TIME ZONE,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT credential_hash_present CHECK (credential_hash <> '')
);

CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_key ON users (lower(email));
CREATE UNIQUE INDEX IF NOT EXISTS users_username_lower_key ON users (lower(username));
CREATE INDEX IF NOT EXISTS idx_users_status ON users (status);

CREATE TABLE IF NOT EXISTS user_audit_logs (
    audit_id UUID PRIMARY KEY,
    account_id UUID NOT NULL,
    action VARCHAR(50) NOT NULL,
    old_value JSONB,
    new_value JSONB,
    ip_address INET,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT valid_action CHECK (
        action IN ('create', 'update', 'delete', 'login', 'logout', 'password_change')
    )
);

CREATE INDEX IF NOT EXISTS idx_user_audit_logs_account
    ON user_audit_logs (account_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_user_audit_logs_created
    ON user_audit_logs (created_at DESC, audit_id DESC);
"""

# The age rule depends on the current date, which a Postgres CHECK constraint
# cannot reference reliably, so it is enforced by the service only.

SAMPLE_ACCOUNT = CreateAccountInput(
    email="john.doe@example.com",
    username="johndoe",
    credential_hash="$2a$12$LQv3c1yqBWVHxkd0LHAkCOYz6TtxMQJqhN8/LewdBPj4J/HS.i77i",
    first_name="John",
    last_name="Doe",
    date_of_birth=date(1990, 1, 15),
    phone_number="+1-555-123-4567",
)


def apply_schema(pool: ConnectionPool) -> None:
    """Create the enum type, tables and indexes when they do not exist yet."""
    with pool.connection() as conn:
        conn.execute(SCHEMA_DDL)
        conn.commit()
    logger.info("account schema applied")


def seed_sample_account(service: AccountService) -> bool:
    """Insert the sample account through the store so it is audited.

    Returns ``False`` when the account is already present.
    """
    if service.find_by_username(SAMPLE_ACCOUNT.username) is not None:
        logger.info("sample account already present, skipping seed")
        return False
    try:
        account = service.create_account(SAMPLE_ACCOUNT)
    except ConflictError:
        logger.info("sample account created concurrently, skipping seed")
        return False
    logger.info("seeded sample account %s", account.account_id)
    return True
