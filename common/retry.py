"""
Retry utilities for optimistic-concurrency conflicts
"""
import random
import time
from typing import Callable, Any, Optional, Tuple, Type
import logging

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.01,
        max_delay: float = 0.5,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[Tuple[Type[BaseException], ...]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = tuple(retryable_exceptions or ())

class RetryExhausted(Exception):
    """Every attempt failed with a retryable exception"""
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up after {attempts} attempts: {last_error}")

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)
    return delay

def retry_call(func: Callable, config: RetryConfig, *args, sleep: Callable[[float], None] = time.sleep, **kwargs) -> Any:
    """Call func, retrying only on config.retryable_exceptions.

    Anything else propagates on the first occurrence. When the attempts run
    out RetryExhausted is raised with the last error attached.
    """
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except config.retryable_exceptions as e:
            last_exception = e
            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {getattr(func, '__name__', func)}")
                break
            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {getattr(func, '__name__', func)}: {e}. Retrying in {delay:.3f}s")
            sleep(delay)

    raise RetryExhausted(config.max_attempts, last_exception)
