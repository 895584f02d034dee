"""
System wiring

Builds one set of collaborators around a single injected storage backend.
Each application or test creates its own instance; nothing here is global.
"""

from typing import Optional

from .accounts import AccountStore
from .auth import AuthorizationGate, TokenService
from .config import TakaflowConfig, get_config
from .ledger import TransactionLog
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine


class TakaflowSystem:
    """Transfer core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[TakaflowConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.storage_type, self.config.database_url, self.config.database_pool_size
        )

        self.accounts = AccountStore(self.storage)
        self.transaction_log = TransactionLog(self.storage)
        self.tokens = TokenService.from_config(self.config)
        self.gate = AuthorizationGate(self.accounts, self.tokens)
        self.engine = TransferEngine(
            self.storage, self.accounts, self.transaction_log, self.config
        )

    def close(self) -> None:
        self.storage.close()
