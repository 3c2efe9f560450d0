"""
Capability interfaces consumed by task handlers.

Handlers never talk to an AI provider or a transport directly; they receive
objects implementing these interfaces, so tests can hand in fakes.
"""

import abc

from vendorflow.schemas import ConversationTurn, VerificationResult


class AICapability(abc.ABC):
    @abc.abstractmethod
    async def generate_message(self, vendor_profile: dict) -> str:
        """Outreach message text for a vendor profile."""

    @abc.abstractmethod
    async def verify_document(self, doc_type: str, vendor_name: str, specialty: str) -> VerificationResult:
        """Compliance verdict for a COI / W9 document."""

    @abc.abstractmethod
    async def advance_conversation(self, vendor_id: str, user_message: str) -> ConversationTurn:
        """Reply and new onboarding progress for one chat message.

        Must not write: the dispatcher persists the turn with its task.
        """


class NotificationChannel(abc.ABC):
    @abc.abstractmethod
    async def send(self, channel: str, recipient: str, content: dict) -> str:
        """Deliver ``content`` ({"subject", "body"}) and return a delivery id.

        Raises DeliveryError when the transport refuses or fails.
        """

    async def notify_operator(self, text: str) -> bool:
        """Best-effort operator alert (human review signal). Returns True on success."""
        return False
