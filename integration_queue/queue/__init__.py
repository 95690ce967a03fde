"""
Queue services: idempotent enqueue, leases, retries, postings and operator
overrides. Import the submodules directly.
"""
