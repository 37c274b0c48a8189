"""
Retry/DLQ политика для задач загрузки.

Назначение:
- не терять задачу на транзиентной ошибке
- не крутиться вечно на задаче, которая не загрузится никогда
- экспоненциальный backoff между попытками
- после потолка попыток - DLQ

Важно:
- счётчик попыток хранится вместе с задачей (переживает рестарт)
- отмена по паузе/остановке попыткой не считается
"""

from __future__ import annotations

from dataclasses import dataclass

from upload_dispatcher.common.config import Settings
from upload_dispatcher.domain.task import Task


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    attempts: int
    delay_sec: float = 0.0
    not_before: float | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5  # <=0 - без потолка
    backoff_base_sec: float = 2.0
    backoff_max_sec: float = 300.0

    @classmethod
    def from_settings(cls, s: Settings) -> RetryPolicy:
        return cls(
            max_attempts=int(s.retry_max_attempts),
            backoff_base_sec=float(s.retry_backoff_base_sec),
            backoff_max_sec=float(s.retry_backoff_max_sec),
        )

    def backoff(self, attempts: int) -> float:
        """
        Задержка перед следующей попыткой после attempts неудач:
        base * 2**(attempts-1), не больше backoff_max_sec.
        """
        if self.backoff_base_sec <= 0 or attempts <= 0:
            return 0.0
        delay = self.backoff_base_sec * (2 ** (attempts - 1))
        return min(delay, max(0.0, self.backoff_max_sec))

    def on_failure(self, task: Task, *, now: float) -> RetryDecision:
        attempts = int(task.attempts) + 1
        if self.max_attempts > 0 and attempts >= self.max_attempts:
            return RetryDecision(retry=False, attempts=attempts)

        delay = self.backoff(attempts)
        return RetryDecision(
            retry=True,
            attempts=attempts,
            delay_sec=delay,
            not_before=(now + delay) if delay > 0 else None,
        )

    @staticmethod
    def is_due(task: Task, *, now: float) -> bool:
        return task.not_before is None or task.not_before <= now
