"""
Base interface for downstream actions and the loader that picks one by name.

An action is whatever should happen once a new account has been confirmed:
provisioning a home directory, calling a webhook, and so on. Action modules
live in this package and expose one ``ReactionActionBase`` subclass.
"""

import logging
import importlib
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class DownstreamActionFailure(Exception):
    """Raised when the downstream action fails for an account."""

    def __init__(self, account_id: str, message: str):
        self.account_id = account_id
        super().__init__(f"Action failed for {account_id}: {message}")


class ActionLoadError(Exception):
    """Raised when an action module cannot be loaded or instantiated."""
    pass


class ReactionActionBase(ABC):
    """
    Abstract base class for downstream actions.

    Subclasses implement ``invoke``; the engine calls ``run``, which turns
    both exceptions and a falsy return into ``DownstreamActionFailure``.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.name = config.get('name', config.get('module', type(self).__name__))

    @abstractmethod
    def invoke(self, account_id: str, event=None) -> bool:
        """
        React to a confirmed new account.

        Args:
            account_id: Account identifier
            event: The ChangeEvent that announced the account, if any

        Returns:
            True on success
        """
        pass

    def run(self, account_id: str, event=None) -> None:
        try:
            succeeded = self.invoke(account_id, event)
        except DownstreamActionFailure:
            raise
        except Exception as e:
            raise DownstreamActionFailure(account_id, f"{type(e).__name__}: {e}") from e
        if not succeeded:
            raise DownstreamActionFailure(account_id, f"{self.name} reported failure")

    def describe(self) -> str:
        return self.name

    def close(self):
        """Release any resources held by the action."""
        pass


def load_action(config: Dict[str, Any], package: Optional[str] = None) -> ReactionActionBase:
    """
    Import ``ldap_watch.actions.<module>`` and instantiate its action class.

    Raises:
        ActionLoadError: If the module is missing or has no action class
    """
    module_name = config['module']
    package = package or __name__.rsplit('.', 1)[0]

    try:
        action_module = importlib.import_module(f"{package}.{module_name}")
    except ImportError as e:
        raise ActionLoadError(f"Failed to import action module {module_name}: {e}")

    action_class = None
    for attr_name in dir(action_module):
        attr = getattr(action_module, attr_name)
        if (isinstance(attr, type) and
                issubclass(attr, ReactionActionBase) and
                attr is not ReactionActionBase):
            action_class = attr
            break

    if action_class is None:
        raise ActionLoadError(f"No ReactionActionBase subclass found in module {module_name}")

    try:
        action = action_class(config)
    except Exception as e:
        raise ActionLoadError(f"Failed to initialize action {module_name}: {e}")

    logger.info(f"Loaded downstream action {action.describe()}")
    return action
