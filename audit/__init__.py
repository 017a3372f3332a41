"""
audit/ -- Append-only trail of security-relevant events.

AuditTrail (trail.py) is the only writer. AuditStore (store.py) offers
append and filtered reads; it has no update or delete path.
"""
