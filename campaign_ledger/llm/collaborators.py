"""
External scoring collaborators.

Two interfaces the ledger depends on:
- FraudScorer: (transactions[]) -> {riskScore, isSuspicious}
- PlausibilityVerifier: ({category, amount, reason}) -> {score}

The LLM-backed implementations build a prompt, request JSON, and validate the
response with pydantic. `call_with_timeout` runs any collaborator call on a
thread pool (one per collaborator) with a hard deadline; callers decide the fallback (donations fail
open, withdrawals fail closed).
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from decimal import Decimal
from typing import Any, Callable, Optional, Protocol, TypeVar

from pydantic import ValidationError as PydanticValidationError

from ..constants import COLLABORATOR_MAX_WORKERS
from .llm_client import LLMClient, LLMTask
from .schemas import FraudAssessment, PlausibilityAssessment, parse_json_response

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollaboratorUnavailable(Exception):
    """A collaborator timed out, errored, or returned an unusable response."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"{name} unavailable: {reason}")
        self.name = name
        self.reason = reason


class FraudScorer(Protocol):
    def score(self, transactions: list[dict[str, Any]]) -> FraudAssessment: ...


class PlausibilityVerifier(Protocol):
    def verify(self, category: str, amount: Decimal, reason: str) -> PlausibilityAssessment: ...


# Collaborator name -> its own pool
_executors: dict[str, ThreadPoolExecutor] = {}
_executors_lock = threading.Lock()


def _get_executor(name: str) -> ThreadPoolExecutor:
    with _executors_lock:
        executor = _executors.get(name)
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=COLLABORATOR_MAX_WORKERS,
                thread_name_prefix=f"ledger-{name.replace(' ', '-')}",
            )
            _executors[name] = executor
        return executor


def call_with_timeout(name: str, func: Callable[..., T], timeout: float, *args, **kwargs) -> T:
    """
    Run a collaborator call with a hard deadline.

    A call that overruns keeps running in the background; its result is dropped.

    Raises:
        CollaboratorUnavailable: timeout, exception, or invalid response
    """
    future = _get_executor(name).submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        logger.warning(f"{name} timed out after {timeout}s")
        raise CollaboratorUnavailable(name, f"timed out after {timeout}s") from None
    except Exception as e:
        logger.warning(f"{name} failed: {type(e).__name__}: {e}")
        raise CollaboratorUnavailable(name, f"{type(e).__name__}: {e}") from e


FRAUD_PROMPT = """You are a fraud detection AI specializing in charitable donations.

Analyze this donor's recent transactions for suspicious patterns. The last
transaction is the one being submitted now.

Recent Transactions:
{transactions}

Look for:
- Unusual transaction amounts
- Rapid succession of donations
- Pattern deviations from the donor's history
- Round number amounts
- Timing anomalies

Respond ONLY with a JSON object:
{{"riskScore": <number 0-1>, "isSuspicious": <boolean>, "reasons": [<string>, ...]}}
"""

PLAUSIBILITY_PROMPT = """You verify that charity spending matches its stated budget category.

Category: {category}
Amount: {amount}
Justification: {reason}

Score how plausibly this justification belongs to this category, from 0 (unrelated)
to 1 (clearly belongs).

Respond ONLY with a JSON object:
{{"score": <number 0-1>, "explanation": <string>}}
"""


class LLMFraudScorer:
    """Fraud scorer backed by an LLM."""

    def __init__(self, client: Optional[LLMClient] = None, timeout: float = 10.0):
        self.client = client or LLMClient(task=LLMTask.FRAUD_SCORING, timeout=timeout)

    def score(self, transactions: list[dict[str, Any]]) -> FraudAssessment:
        prompt = FRAUD_PROMPT.format(transactions=json.dumps(transactions, indent=2, default=str))
        response = self.client.generate(prompt, json_mode=True)
        try:
            return FraudAssessment.model_validate(parse_json_response(response.text))
        except (ValueError, PydanticValidationError) as e:
            raise CollaboratorUnavailable("fraud scorer", f"malformed response: {e}") from e


class LLMPlausibilityVerifier:
    """Withdrawal plausibility verifier backed by an LLM."""

    def __init__(self, client: Optional[LLMClient] = None, timeout: float = 10.0):
        self.client = client or LLMClient(task=LLMTask.PLAUSIBILITY_CHECK, timeout=timeout)

    def verify(self, category: str, amount: Decimal, reason: str) -> PlausibilityAssessment:
        prompt = PLAUSIBILITY_PROMPT.format(category=category, amount=amount, reason=reason)
        response = self.client.generate(prompt, json_mode=True)
        try:
            return PlausibilityAssessment.model_validate(parse_json_response(response.text))
        except (ValueError, PydanticValidationError) as e:
            raise CollaboratorUnavailable("plausibility verifier", f"malformed response: {e}") from e
