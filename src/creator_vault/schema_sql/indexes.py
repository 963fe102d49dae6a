"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # memberships
    "CREATE INDEX idx_memberships_customer ON memberships(stripe_customer_id) "
    "WHERE stripe_customer_id IS NOT NULL;",
    # product_boxes
    "CREATE INDEX idx_product_boxes_creator ON product_boxes(creator_id, created_at DESC);",
    # product_box_contents
    "CREATE INDEX idx_contents_box ON product_box_contents(product_box_id, created_at);",
    # purchases
    "CREATE INDEX idx_purchases_buyer ON purchases(buyer_uid, purchased_at DESC);",
    "CREATE INDEX idx_purchases_creator ON purchases(creator_id, purchased_at DESC) "
    "WHERE status = 'completed';",
    "CREATE INDEX idx_purchases_box ON purchases(product_box_id);",
    # webhook_events
    "CREATE INDEX idx_webhook_events_failed ON webhook_events(received_at) "
    "WHERE status = 'failed';",
]
