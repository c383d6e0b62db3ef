"""Use-case level logic.

These modules implement missing-attachment detection and remediation
(risk classification, upload links, notifications, orchestration) on top of
data returned by integrations (Xero, SMS/email providers, stores).

They should be:
- unit-testable with in-memory stores and fake providers
- free of web/framework code
"""
