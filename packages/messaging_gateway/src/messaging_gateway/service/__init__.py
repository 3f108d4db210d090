"""
Messaging Service Layer

Integration management, side-effect dispatch and the messaging gateway
(imported from ``messaging_gateway.service.gateway``).
"""

from messaging_gateway.service.extraction import ExtractedMessageInfo, extract_message_info
from messaging_gateway.service.integrations import IntegrationCipher, IntegrationService
from messaging_gateway.service.side_effects import BestEffortDispatcher

__all__ = [
    "IntegrationCipher",
    "IntegrationService",
    "BestEffortDispatcher",
    "ExtractedMessageInfo",
    "extract_message_info",
]
