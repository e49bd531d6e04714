"""Synthesis building blocks: chunking, fingerprints, quota, provider, tee, persistence, storage."""
