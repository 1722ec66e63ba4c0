"""
Client session used for every Switchboard MCP server connection.

Extends the base MCP client session with request logging and forwarding
of server log notifications to an observer.
"""

from typing import Callable, Optional

from mcp import ClientSession
from mcp.shared.session import (
    ReceiveResultT,
    SendRequestT,
)
from mcp.types import (
    LoggingMessageNotification,
    LoggingMessageNotificationParams,
    ServerNotification,
)

from switchboard_mcp.utils.logging import get_logger

logger = get_logger(__name__)

LogObserver = Callable[[LoggingMessageNotificationParams], None]


class SwitchboardClientSession(ClientSession):
    """
    Client session for connections to MCP servers.

    Server log notifications are handed to ``log_observer`` as they arrive;
    with no observer they are dropped.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.log_observer: Optional[LogObserver] = None

    async def send_request(self, request: SendRequestT, result_type: type[ReceiveResultT], *args, **kwargs) -> ReceiveResultT:
        logger.debug("send_request: request=", data=request.model_dump())
        try:
            result = await super().send_request(request, result_type, *args, **kwargs)
            logger.debug("send_request: response=", data=result.model_dump())
            return result
        except Exception as e:
            logger.error(f"send_request failed: {e}")
            raise

    async def _received_notification(self, notification: ServerNotification) -> None:
        if isinstance(notification.root, LoggingMessageNotification) and self.log_observer:
            try:
                self.log_observer(notification.root.params)
            except Exception as e:
                logger.error(f"Error in server log observer: {e}")
        return await super()._received_notification(notification)
