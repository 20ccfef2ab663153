"""JSON state file.

Holds the account reference data and the counter states between runs. The
file is replaced atomically so a crash during a write leaves the previous
version in place.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Union

from pydantic import ValidationError

from .exceptions import StateFileError
from .models import PersistedState

logger = logging.getLogger(__name__)


class StateStore:
    """Load and save the PersistedState at a fixed path."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> PersistedState:
        """Read the state file.

        A missing file is a first run and yields an empty state.

        Raises:
            StateFileError: The file exists but is unreadable or malformed
        """
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting from scratch")
            return PersistedState()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = PersistedState.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise StateFileError(f"cannot load state file {self.path}: {e}") from e

        logger.info(f"Loaded state from {self.path} ({len(state.counter_states)} counters)")
        return state

    def save(self, state: PersistedState):
        """Write the state file atomically, creating its directory if needed.

        Raises:
            StateFileError: The file cannot be written
        """
        payload = state.model_dump(by_alias=True, mode="json")

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StateFileError(f"cannot save state file {self.path}: {e}") from e

        logger.debug(f"State saved to {self.path}")
