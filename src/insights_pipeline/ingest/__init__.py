"""Readers for the upstream consent registry and raw record store."""
