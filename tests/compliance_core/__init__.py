"""
Tests for the Compliance Core.

This package contains tests for:
- Anonymization techniques and the anonymization engine
- k-anonymity and differential privacy
- Record stores (in-memory and SQLAlchemy)
- Retention policies and the retention executor
- Audit trail, statistics and compliance reports
- Consent management and consent workflows
- Configuration, wiring and the CLI
"""
