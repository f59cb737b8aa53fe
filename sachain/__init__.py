"""Sachain KYC and privacy-compliance data layer.

Resilient single-table storage (retry, error classification), the audit
trail, and the consent / deletion / retention lifecycle built on top of it.
"""

__version__ = "0.1.0"
