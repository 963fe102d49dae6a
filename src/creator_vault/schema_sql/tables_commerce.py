"""CREATE TABLE statements for bundles, purchases, grants, and webhook events."""

PRODUCT_BOXES = """
CREATE TABLE product_boxes (
    product_box_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    creator_id     VARCHAR(128) NOT NULL,
    title          VARCHAR(200) NOT NULL,
    description    TEXT,
    price_cents    INTEGER NOT NULL
                   CONSTRAINT ck_product_box_price_nonneg CHECK (price_cents >= 0),
    currency       VARCHAR(3) NOT NULL DEFAULT 'usd',
    active         BOOLEAN NOT NULL DEFAULT TRUE,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

PRODUCT_BOX_CONTENTS = """
CREATE TABLE product_box_contents (
    content_id     UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    product_box_id UUID NOT NULL REFERENCES product_boxes(product_box_id),
    title          VARCHAR(300),
    object_key     VARCHAR(1024),
    mime_type      VARCHAR(100),
    file_size      BIGINT,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

WEBHOOK_EVENTS = """
CREATE TABLE webhook_events (
    event_id     VARCHAR(255) PRIMARY KEY,
    event_type   VARCHAR(100) NOT NULL,
    status       VARCHAR(20) NOT NULL
                 CONSTRAINT ck_webhook_event_status
                 CHECK (status IN ('processing','recorded','failed')),
    attempts     INTEGER NOT NULL DEFAULT 1,
    last_error   TEXT,
    received_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    processed_at TIMESTAMPTZ
);
"""

PURCHASES = """
CREATE TABLE purchases (
    purchase_id       VARCHAR(255) PRIMARY KEY,
    buyer_uid         VARCHAR(128) NOT NULL,
    creator_id        VARCHAR(128) NOT NULL,
    product_box_id    UUID NOT NULL REFERENCES product_boxes(product_box_id),
    amount            INTEGER NOT NULL
                      CONSTRAINT ck_purchase_amount_nonneg CHECK (amount >= 0),
    currency          VARCHAR(3) NOT NULL,
    status            VARCHAR(20) NOT NULL
                      CONSTRAINT ck_purchase_status
                      CHECK (status IN ('completed','failed','refunded')),
    payment_intent_id VARCHAR(255) UNIQUE,
    source_event_id   VARCHAR(255) NOT NULL REFERENCES webhook_events(event_id),
    purchased_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    refunded_at       TIMESTAMPTZ
);
"""

ACCESS_GRANTS = """
CREATE TABLE access_grants (
    buyer_uid      VARCHAR(128) NOT NULL,
    product_box_id UUID NOT NULL REFERENCES product_boxes(product_box_id),
    purchase_id    VARCHAR(255) NOT NULL REFERENCES purchases(purchase_id),
    granted        BOOLEAN NOT NULL DEFAULT TRUE,
    granted_at     TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (buyer_uid, product_box_id)
);
"""

ALL = [
    PRODUCT_BOXES,
    PRODUCT_BOX_CONTENTS,
    WEBHOOK_EVENTS,
    PURCHASES,
    ACCESS_GRANTS,
]
