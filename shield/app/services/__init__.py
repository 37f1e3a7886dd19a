"""Services package for the abuse-prevention pipeline.

This package provides:
- Rate limiting (fixed window, sliding window, token bucket, fair-share)
- Authentication attempt limiting with success reset
- CSRF token issuance and validation
- SQL injection detection and sanitization
- IP reputation and the orchestrating pipeline
"""

from shield.app.services.auth_limiter import AuthAttemptConfig, AuthAttemptLimiter
from shield.app.services.csrf import CSRFManager
from shield.app.services.injection import InjectionDetector
from shield.app.services.orchestrator import (
    PipelineDecision,
    RequestContext,
    SecurityOrchestrator,
)
from shield.app.services.rate_limit import RateLimitEngine
from shield.app.services.reputation import IPReputationRegistry

__all__ = [
    "AuthAttemptConfig",
    "AuthAttemptLimiter",
    "CSRFManager",
    "InjectionDetector",
    "PipelineDecision",
    "RequestContext",
    "SecurityOrchestrator",
    "RateLimitEngine",
    "IPReputationRegistry",
]
