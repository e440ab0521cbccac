"""
API server package — read-only HTTP interface over the mirrored tables.

Serves profiles, votes and delegations to clients; never mutates the store.
"""
