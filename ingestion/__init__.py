"""
Ingestion — fetch jokes from external sources and publish them to the queue.

Fetchers are pull-style: each call returns a finite, possibly empty list of
candidates. The scheduler fingerprints nothing itself; candidates arrive
with their content hash already computed.
"""
