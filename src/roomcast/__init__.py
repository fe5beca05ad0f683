from . import infra as infra
from ._config import RelayConfig as RelayConfig
from ._messages import ChatMessage as ChatMessage
from ._messages import ChatSubmitMessage as ChatSubmitMessage
from ._messages import ClientMessage as ClientMessage
from ._messages import JoinMessage as JoinMessage
from ._messages import ServerMessage as ServerMessage
from ._messages import UserJoinedMessage as UserJoinedMessage
from ._messages import UserLeftMessage as UserLeftMessage
from ._registry import ANONYMOUS as ANONYMOUS
from ._registry import BroadcastRegistry as BroadcastRegistry
from ._registry import Participant as Participant
from ._server import RoomcastServer as RoomcastServer

__version__ = "0.1.0"
