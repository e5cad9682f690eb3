"""User-facing advisory surfaces the protocol reports through."""
from abc import ABC, abstractmethod

from constants import NOTIFICATION_MS
from logging_config import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    @abstractmethod
    def notify(self, message: str, duration_ms: int = NOTIFICATION_MS) -> None:
        ...

    @abstractmethod
    def offer_redirect(self, url: str) -> None:
        """Ask the user whether to go back to the room URL; never navigates by itself."""


class LogNotifier(Notifier):
    def notify(self, message, duration_ms=NOTIFICATION_MS):
        logger.info(f"[notice {duration_ms}ms] {message}")

    def offer_redirect(self, url):
        logger.info(f"[notice] You've navigated away from the sync room URL. Return to {url}?")


class Navigator(ABC):
    @abstractmethod
    def navigate(self, url: str) -> None:
        ...


class LogNavigator(Navigator):
    def navigate(self, url):
        logger.info(f"Navigating to {url}")
