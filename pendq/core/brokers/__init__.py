from pendq.core.brokers.postgres import PostgresBroker
from pendq.core.brokers.errors import StoreError, StoreErrorCode

__all__ = [
    'PostgresBroker',
    'StoreError',
    'StoreErrorCode',
]
