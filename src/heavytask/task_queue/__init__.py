from .coordinator import KeyCoordinator, OCCUPATION_TTL_SECONDS
from .broker import Delivery, RedisTaskBroker
from .redis_keys import BrokerKeys, CoordinatorKeys

__all__ = [
    "KeyCoordinator",
    "OCCUPATION_TTL_SECONDS",
    "Delivery",
    "RedisTaskBroker",
    "BrokerKeys",
    "CoordinatorKeys",
]
