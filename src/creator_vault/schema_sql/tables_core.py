"""CREATE TABLE statements for memberships and connected payment accounts."""

MEMBERSHIPS = """
CREATE TABLE memberships (
    uid                    VARCHAR(128) PRIMARY KEY,
    email                  VARCHAR(320),
    plan                   VARCHAR(20) NOT NULL DEFAULT 'free'
                           CONSTRAINT ck_membership_plan
                           CHECK (plan IN ('free','creator_pro')),
    status                 VARCHAR(20) NOT NULL DEFAULT 'inactive'
                           CONSTRAINT ck_membership_status
                           CHECK (status IN ('active','inactive','canceled','past_due')),
    stripe_customer_id     VARCHAR(255) UNIQUE,
    stripe_subscription_id VARCHAR(255) UNIQUE,
    price_id               VARCHAR(255),
    current_period_end     TIMESTAMPTZ,
    cancel_at_period_end   BOOLEAN NOT NULL DEFAULT FALSE,
    downloads_this_period  INTEGER NOT NULL DEFAULT 0,
    bundles_created        INTEGER NOT NULL DEFAULT 0,
    period_start           DATE NOT NULL DEFAULT date_trunc('month', now())::date,
    created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT ck_membership_active_is_pro
        CHECK (status <> 'active' OR plan = 'creator_pro'),
    CONSTRAINT ck_membership_free_has_no_subscription
        CHECK (plan <> 'free' OR stripe_subscription_id IS NULL),
    CONSTRAINT ck_membership_counters_nonneg
        CHECK (downloads_this_period >= 0 AND bundles_created >= 0)
);
"""

CONNECTED_ACCOUNTS = """
CREATE TABLE connected_accounts (
    creator_id        VARCHAR(128) PRIMARY KEY,
    stripe_account_id VARCHAR(255) NOT NULL UNIQUE,
    charges_enabled   BOOLEAN NOT NULL DEFAULT FALSE,
    payouts_enabled   BOOLEAN NOT NULL DEFAULT FALSE,
    details_submitted BOOLEAN NOT NULL DEFAULT FALSE,
    connected_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    refreshed_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [MEMBERSHIPS, CONNECTED_ACCOUNTS]
