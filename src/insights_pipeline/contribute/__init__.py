"""Contribution layer: per-user pseudonymized snapshots.

`build` orchestrates fetch → generalize → write for each consenting user and
`store` persists the resulting documents in MongoDB.
"""
