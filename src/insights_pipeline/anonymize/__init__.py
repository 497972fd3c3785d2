"""Anonymization primitives.

Provides the salted one-way pseudonymizer and the per-domain generalizers
that turn raw records into coarse, allow-listed contribution fields.
"""
