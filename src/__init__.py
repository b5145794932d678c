"""
Content Action Engine

Policy-gated execution of low-risk content edits:
- Tiered handlers (auto, execute-after-approval, manual-only)
- Rate limiting and a manual-reset circuit breaker
- Audited execution with rollback
- Batched, preference-aware notifications
"""

__version__ = "0.1.0"
