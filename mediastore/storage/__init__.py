"""Canonicalization, digests and coordinated blob storage."""
