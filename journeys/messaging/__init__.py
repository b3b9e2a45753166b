"""Messaging sender collaborator."""

from .sender import MessageSender, OutboundMessage, ProviderMessageSender

__all__ = ["MessageSender", "OutboundMessage", "ProviderMessageSender"]
