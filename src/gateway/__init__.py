"""Session webhook gateway.

This package receives third-party webhooks and injects compact summaries
into running interactive agent sessions:
- Subscription registry with partial-update semantics
- Webhook ingestion (HMAC verification, jq gate and summary filters)
- Event persistence in PostgreSQL (or in memory for local use)
- Per-session delivery mailboxes and control-plane notification streams
- cloudflared tunnel supervision for a stable public endpoint
"""
