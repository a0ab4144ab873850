"""
CertVerify Backend — Backend Failure Policy
=============================================

What:  Declares how a component behaves when the coordination store fails.
Why:   The limiter and cache trade correctness for availability; CSRF must
       not. Making the choice an explicit attribute keeps it visible in the
       code and assertable in tests.

    FAIL_OPEN    request proceeds as if the component were absent
    FAIL_CLOSED  request is rejected
"""

import enum


class FailurePolicy(str, enum.Enum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"

    @property
    def allows(self) -> bool:
        """True when a backend failure should let the request through."""
        return self is FailurePolicy.FAIL_OPEN
