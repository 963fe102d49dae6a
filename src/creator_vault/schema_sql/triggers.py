"""Trigger functions and trigger DDL guarding purchase and event history."""

# ---- Trigger functions ----

FN_RAISE_UNDELETABLE = """
CREATE OR REPLACE FUNCTION raise_undeletable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % cannot be deleted', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

FN_CHECK_IMMUTABLE_PURCHASE = """
CREATE OR REPLACE FUNCTION check_immutable_purchase_fields()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.buyer_uid         IS DISTINCT FROM NEW.buyer_uid
    OR OLD.creator_id        IS DISTINCT FROM NEW.creator_id
    OR OLD.product_box_id    IS DISTINCT FROM NEW.product_box_id
    OR OLD.amount            IS DISTINCT FROM NEW.amount
    OR OLD.currency          IS DISTINCT FROM NEW.currency
    OR OLD.payment_intent_id IS DISTINCT FROM NEW.payment_intent_id
    OR OLD.source_event_id   IS DISTINCT FROM NEW.source_event_id
    OR OLD.purchased_at      IS DISTINCT FROM NEW.purchased_at
    THEN
        RAISE EXCEPTION 'Only status and refunded_at of a purchase may change';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FN_CHECK_RECORDED_EVENT = """
CREATE OR REPLACE FUNCTION check_recorded_webhook_event()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.status = 'recorded' THEN
        RAISE EXCEPTION 'Recorded webhook event % is final', OLD.event_id;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FUNCTIONS_ALL = [
    FN_RAISE_UNDELETABLE,
    FN_CHECK_IMMUTABLE_PURCHASE,
    FN_CHECK_RECORDED_EVENT,
]

# ---- Triggers ----

TRIGGERS_ALL = [
    "CREATE TRIGGER trg_purchases_undeletable "
    "BEFORE DELETE ON purchases "
    "FOR EACH ROW EXECUTE FUNCTION raise_undeletable_error();",

    "CREATE TRIGGER trg_purchases_immutable_fields "
    "BEFORE UPDATE ON purchases "
    "FOR EACH ROW EXECUTE FUNCTION check_immutable_purchase_fields();",

    "CREATE TRIGGER trg_webhook_events_undeletable "
    "BEFORE DELETE ON webhook_events "
    "FOR EACH ROW EXECUTE FUNCTION raise_undeletable_error();",

    "CREATE TRIGGER trg_webhook_events_recorded_final "
    "BEFORE UPDATE ON webhook_events "
    "FOR EACH ROW EXECUTE FUNCTION check_recorded_webhook_event();",

    "CREATE TRIGGER trg_memberships_undeletable "
    "BEFORE DELETE ON memberships "
    "FOR EACH ROW EXECUTE FUNCTION raise_undeletable_error();",
]
