"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the slot ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Supplies net to zero; escrow sides plus refunds equal the total
2. atomicity.py - All-or-nothing operations
3. idempotency.py - Duplicate execution handling
4. monotonicity.py - Delivery progress only moves forward

These tests use hypothesis for property-based testing.
"""
