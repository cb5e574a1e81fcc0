import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_secs: float = 0.2
    max_delay_secs: float = 2.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_secs=settings.retry_base_delay_secs,
            max_delay_secs=settings.retry_max_delay_secs,
        )

    def retrying(
        self,
        retry_on: tuple[type[BaseException], ...],
        *,
        deadline_secs: Optional[float] = None,
    ) -> Retrying:
        stop = stop_after_attempt(max(1, self.max_attempts))
        if deadline_secs is not None:
            stop = stop | stop_after_delay(deadline_secs)
        return Retrying(
            stop=stop,
            wait=wait_exponential_jitter(
                initial=self.base_delay_secs, max=self.max_delay_secs
            ),
            retry=retry_if_exception_type(retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def call(
        self,
        fn: Callable[..., T],
        *args,
        retry_on: tuple[type[BaseException], ...],
        deadline_secs: Optional[float] = None,
        **kwargs,
    ) -> T:
        return self.retrying(retry_on, deadline_secs=deadline_secs)(fn, *args, **kwargs)
