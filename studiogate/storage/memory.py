from __future__ import annotations

import json
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from studiogate.logging import get_logger
from studiogate.storage.common import normalize_email, validate_update
from studiogate.storage.errors import ConstraintViolation
from studiogate.storage.models import Account


class MemoryStore:
    """In-process account store, optionally persisted to a JSON state file.

    Every read returns a copy, so callers never hold a reference that a
    concurrent update could mutate underneath them.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        # RLock so helpers can re-enter while an update holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {"accounts": [a.to_dict() for a in self.accounts.values()]}
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            raise
        self.accounts = {
            entry["id"]: Account.from_dict(entry) for entry in data.get("accounts", [])
        }
        return True

    def _find(self, match: Mapping[str, Any]) -> Optional[Account]:
        for account in self.accounts.values():
            if all(
                (normalize_email(account.email) if key == "email" else getattr(account, key))
                == value
                for key, value in match.items()
            ):
                return account
        return None

    def create_account(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Account:
        with self._data_lock:
            if self._find({"email": normalize_email(email)}):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(
                email.strip(),
                first_name=first_name,
                last_name=last_name,
                bio=bio,
                avatar=avatar,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self) -> Optional[Account]:
        """Return the owner account (earliest created) or ``None``."""
        with self._data_lock:
            if not self.accounts:
                return None
            oldest = min(self.accounts.values(), key=lambda a: a.created_at)
            return replace(oldest)

    def list_accounts(self) -> List[Account]:
        with self._data_lock:
            return [replace(a) for a in sorted(self.accounts.values(), key=lambda a: a.created_at)]

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find({"email": normalize_email(email)})
            return replace(account) if account else None

    def get_account_by_otp(self, otp: str) -> Optional[Account]:
        if not otp:
            return None
        with self._data_lock:
            account = self._find({"otp": otp})
            return replace(account) if account else None

    def get_account_by_session_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._data_lock:
            account = self._find({"session_token": token})
            return replace(account) if account else None

    def update_account(
        self,
        match: Mapping[str, Any],
        *,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Iterable[str] = (),
    ) -> Optional[Account]:
        """Apply ``$set``/``$unset`` to the first account matching every filter.

        Returns the account as it was before the update, or ``None`` when
        nothing matched.
        """
        match, to_set, to_unset = validate_update(match, set_fields, unset_fields)
        with self._data_lock:
            account = self._find(match)
            if account is None:
                return None
            before = replace(account)
            for key, value in to_set.items():
                setattr(account, key, value)
            for key in to_unset:
                setattr(account, key, None)
            self._persist_state()
            return before

    def verify_connection(self) -> None:
        return None
