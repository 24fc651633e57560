import logging
import time
from typing import Any, Callable, Iterable

from maestro.domain.value_object import RetryOutcome, RetryPolicy

logger = logging.getLogger(__name__)

RetryHook = Callable[[int, Exception, float], None]


class RetryClassifier:
    """
    Decides whether a failed attempt is worth retrying.

    The structured signals win over the message text: an explicit ``retriable`` attribute on the
    error is authoritative, then a ``category`` listed in the policy's categories, then the
    built-in transient exception types. Matching ``patterns`` against the message is the fallback.
    """

    def __init__(self, patterns: Iterable[str] = (), categories: Iterable[str] = ()):
        self.patterns = tuple(p.lower() for p in patterns)
        self.categories = frozenset(c.lower() for c in categories)

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> "RetryClassifier":
        return cls(policy.retriable_patterns, policy.retriable_categories)

    def is_retriable(self, error: BaseException) -> bool:
        explicit = getattr(error, "retriable", None)
        if explicit is not None:
            return bool(explicit)
        category = getattr(error, "category", None)
        if category:
            return category.lower() in self.categories
        if isinstance(error, (TimeoutError, ConnectionError)):
            return True
        message = str(error).lower()
        return any(pattern in message for pattern in self.patterns)


class RetryCoordinator:
    """Runs an operation with bounded retries and exponential backoff."""

    def __init__(self, policy: RetryPolicy | None = None, sleep: Callable[[float], None] = time.sleep):
        """
        :param policy: Default policy used when ``execute_with_retry`` gets none
        :type policy: RetryPolicy | None
        :param sleep: Function used to wait between attempts
        :type sleep: Callable[[float], None]
        """
        self.policy = policy if policy is not None else RetryPolicy()
        self.sleep = sleep

    def execute_with_retry(
        self,
        operation: Callable[[], Any],
        policy: RetryPolicy | None = None,
        on_retry: RetryHook | None = None,
    ) -> RetryOutcome:
        """
        Attempt ``operation`` until it succeeds, fails terminally or exhausts the policy.

        Errors raised by the operation are reported in the outcome, not raised.

        :param operation: Zero-argument callable performing one attempt
        :type operation: Callable[[], Any]
        :param policy: Policy for this call, defaults to the coordinator's policy
        :type policy: RetryPolicy | None
        :param on_retry: Called with ``(attempt, error, delay)`` before each backoff sleep
        :type on_retry: RetryHook | None
        :returns: Success flag, the operation's result, attempts made and the last error
        :rtype: RetryOutcome
        """
        policy = policy if policy is not None else self.policy
        classifier = RetryClassifier.from_policy(policy)
        attempt = 0
        while True:
            attempt += 1
            try:
                result = operation()
            except Exception as e:
                if attempt > policy.max_retries:
                    logger.debug("Giving up after %d attempt(s): %s", attempt, e)
                    return RetryOutcome(success=False, attempts=attempt, last_error=e)
                if not classifier.is_retriable(e):
                    logger.debug("Attempt %d failed with a non-retriable error: %s", attempt, e)
                    return RetryOutcome(success=False, attempts=attempt, last_error=e)
                delay = policy.delay_for(attempt)
                logger.info("Attempt %d failed (%s), retrying in %.2fs", attempt, e, delay)
                if on_retry is not None:
                    on_retry(attempt, e, delay)
                self.sleep(delay)
                continue
            return RetryOutcome(success=True, result=result, attempts=attempt)
