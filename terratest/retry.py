"""Classification of Terraform failures and retry of transient ones."""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from .errors import ToolError, TransientToolError

T = TypeVar("T")


@dataclass(frozen=True)
class TransientSignature:
    """A named class of failure that is expected to clear up on retry."""
    name: str
    pattern: re.Pattern
    description: str

    def matches(self, output: str) -> bool:
        return self.pattern.search(output) is not None


def _signature(name: str, pattern: str, description: str) -> TransientSignature:
    return TransientSignature(name=name, pattern=re.compile(pattern, re.IGNORECASE), description=description)


DEFAULT_TRANSIENT_SIGNATURES: tuple[TransientSignature, ...] = (
    _signature(
        "throttling",
        r"RequestLimitExceeded|Throttling|Rate exceeded|TooManyRequestsException",
        "AWS API rate limiting",
    ),
    _signature(
        "key-pair-propagation",
        r"InvalidKeyPair\.NotFound",
        "newly imported key pair not yet visible to RunInstances",
    ),
    _signature(
        "instance-profile-propagation",
        r"Invalid IAM Instance Profile|iamInstanceProfile\.name is invalid",
        "newly created IAM instance profile not yet visible",
    ),
    _signature(
        "state-wait-timeout",
        r"timeout while waiting for state",
        "resource did not settle within the provider wait",
    ),
    _signature(
        "connection-reset",
        r"connection reset by peer|unexpected EOF|TLS handshake timeout",
        "network flake talking to AWS or the registry",
    ),
    _signature(
        "state-lock",
        r"Error acquiring the state lock",
        "another run briefly holds the remote state lock",
    ),
)


def match_transient_signature(
    output: str, signatures: Sequence[TransientSignature] = DEFAULT_TRANSIENT_SIGNATURES
) -> Optional[TransientSignature]:
    """Return the first signature matching the output, if any."""
    for signature in signatures:
        if signature.matches(output):
            return signature
    return None


def classify_tool_failure(
    command: str,
    exit_code: int,
    output: str,
    signatures: Sequence[TransientSignature] = DEFAULT_TRANSIENT_SIGNATURES,
) -> ToolError:
    """Turn a failed command into a tagged transient error or a fatal one."""
    signature = match_transient_signature(output, signatures)
    if signature:
        return TransientToolError(command, exit_code, output, signature=signature)
    return ToolError(command, exit_code, output)


def _log_before_sleep(logger: logging.Logger, description: str):
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        signature = getattr(exc, "signature", None)
        delay = state.next_action.sleep if state.next_action else 0
        logger.info(
            "%s failed on attempt %d with transient error %s; retrying in %.1fs",
            description,
            state.attempt_number,
            signature.name if signature else "unknown",
            delay,
        )

    return _before_sleep


def retry_transient(
    operation: Callable[[], T],
    *,
    max_attempts: int,
    delay_seconds: float,
    backoff: str = "fixed",
    logger: Optional[logging.Logger] = None,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `operation`, retrying only on TransientToolError.

    Any other exception propagates on the attempt that raised it. When all
    attempts fail transiently the last TransientToolError is raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    if backoff == "exponential":
        wait = wait_exponential(multiplier=delay_seconds, min=delay_seconds, max=delay_seconds * 8)
    else:
        wait = wait_fixed(delay_seconds)
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait,
        retry=retry_if_exception_type(TransientToolError),
        before_sleep=_log_before_sleep(logger or logging.getLogger(__name__), description),
        sleep=sleep,
        reraise=True,
    )
    return retrying(operation)
