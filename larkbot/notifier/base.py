"""Abstract base class for chat notifiers."""

from abc import ABC, abstractmethod
from typing import Any, Dict


class Notifier(ABC):
    """Delivers interactive cards to a chat or user.

    Delivery failures raise; the orchestrator logs and ignores them.
    """

    @abstractmethod
    def notify(self, recipient: str, card: Dict[str, Any]) -> None:
        """Send a card to a chat or user id."""
        pass

    @abstractmethod
    def notify_thread(self, recipient: str, thread_id: str, card: Dict[str, Any]) -> None:
        """Send a card as a reply in the thread rooted at thread_id."""
        pass
