"""Wearable sync infrastructure for Vitalink.

Modules:
    backfill — Historical range requests (serialized, rate-limited, partial-failure tolerant)
    dedup    — Webhook idempotency keys and insert/upsert SQL builders
"""
