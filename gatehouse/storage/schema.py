from __future__ import annotations

SUBSCRIPTION_TIERS = ("free", "basic", "pro", "enterprise")
TRANSACTION_TYPES = ("deposit", "withdrawal", "subscription_payment")

REQUIRED_TABLES = (
    "users",
    "user_preferences",
    "transactions",
    "subscription_history",
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        username VARCHAR(255) UNIQUE NOT NULL,
        email VARCHAR(255) UNIQUE,
        password_hash TEXT NOT NULL,
        provider VARCHAR(50),
        provider_id VARCHAR(255),
        subscription_tier VARCHAR(20) NOT NULL DEFAULT 'free'
            CHECK (subscription_tier IN ('free', 'basic', 'pro', 'enterprise')),
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        last_attempt TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        balance NUMERIC(10, 2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
        subscription_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_preferences (
        user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        theme VARCHAR(20) NOT NULL DEFAULT 'dark',
        language VARCHAR(10) NOT NULL DEFAULT 'en',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        amount NUMERIC(10, 2) NOT NULL,
        type VARCHAR(30) NOT NULL
            CHECK (type IN ('deposit', 'withdrawal', 'subscription_payment')),
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription_history (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        old_tier VARCHAR(20),
        new_tier VARCHAR(20) NOT NULL,
        changed_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_username ON users(username)",
    "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    "CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_users_subscription_tier ON users(subscription_tier)",
    "CREATE INDEX IF NOT EXISTS idx_users_balance ON users(balance)",
    "CREATE INDEX IF NOT EXISTS idx_user_preferences_theme ON user_preferences(theme)",
    "CREATE INDEX IF NOT EXISTS idx_user_preferences_language ON user_preferences(language)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user_id ON transactions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_subscription_history_user_id ON subscription_history(user_id)",
    """
    CREATE OR REPLACE FUNCTION set_updated_at() RETURNS TRIGGER AS $$
    BEGIN
        NEW.updated_at = now();
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS users_set_updated_at ON users",
    """
    CREATE TRIGGER users_set_updated_at
        BEFORE UPDATE ON users
        FOR EACH ROW EXECUTE FUNCTION set_updated_at()
    """,
    "DROP TRIGGER IF EXISTS user_preferences_set_updated_at ON user_preferences",
    """
    CREATE TRIGGER user_preferences_set_updated_at
        BEFORE UPDATE ON user_preferences
        FOR EACH ROW EXECUTE FUNCTION set_updated_at()
    """,
)
