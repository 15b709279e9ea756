# Jobs Package - long-running background consumers
from .movement_consumer import (
    DeliveryOutcome, MovementConsumer, build_consumer, get_consumer,
    start_movement_consumer, stop_movement_consumer,
)

__all__ = [
    "DeliveryOutcome", "MovementConsumer", "build_consumer", "get_consumer",
    "start_movement_consumer", "stop_movement_consumer",
]
