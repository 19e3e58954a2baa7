"""
Service base class.

Services get configuration and the request id through a ServiceContext;
storage and execution clients are handed to each service's constructor.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from storymap.config import Config
from storymap.logging import get_logger, log_extra


@dataclass(frozen=True)
class ServiceContext:
    """Configuration plus the id of the request being served, if any."""
    config: Config
    request_id: Optional[str] = None


class Service:
    """
    Base for Storymap services.

    Example:
        class CardService(Service):
            def touch(self, card_id: str) -> None:
                self.logger.info("card_touched", extra=self.log_extra(card_id=card_id))
    """

    def __init__(self, context: ServiceContext) -> None:
        self.context = context
        self.config = context.config
        self.logger = get_logger(self.__class__.__name__)

    def log_extra(self, **fields: Any) -> Dict[str, Any]:
        """Structured ``extra=`` fields, tagged with the context's request id unless given."""
        fields.setdefault("request_id", self.context.request_id)
        return log_extra(**fields)
