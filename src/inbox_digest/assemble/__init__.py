"""Human-readable views over the digest worklist."""
