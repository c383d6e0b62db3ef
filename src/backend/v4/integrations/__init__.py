"""Integration adapters for external systems (Xero, SMS/email, storage).

Keep these modules small and testable:
- No web framework request/response objects
- No orchestration concerns
- IO + parsing helpers, errors mapped onto `models.errors`
"""
