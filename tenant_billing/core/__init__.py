"""
Core modules for the tenant billing engine.

This package contains the billing-cycle saga, the money, proration, tax and
invoice pipeline, payment orchestration, renewal and non-payment enforcement
state machines, retries, sharding and scheduling.
"""
