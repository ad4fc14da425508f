"""
Message Queue — Decouples joke ingestion and chat delivery from their producers.

- Fetchers PUBLISH joke candidates to `jokes`; the ingestion consumer
  PULLS them and persists idempotently
- The command layer PUBLISHES replies to `outbound-messages`; the delivery
  consumer PULLS them and sends with bounded backoff
- Supports Redis Streams (production) and an in-memory broker (dev/test)
"""
