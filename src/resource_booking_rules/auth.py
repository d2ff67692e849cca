from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Any

import msal


@dataclass
class TokenProvider:
    tenant_id: str
    client_id: str
    client_secret: str
    resource: str

    _app: Any = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _application(self) -> msal.ConfidentialClientApplication:
        # One app per provider so MSAL's in-memory token cache is reused.
        with self._lock:
            if self._app is None:
                self._app = msal.ConfidentialClientApplication(
                    client_id=self.client_id,
                    client_credential=self.client_secret,
                    authority=f"https://login.microsoftonline.com/{self.tenant_id}",
                )
            return self._app

    def get_access_token(self) -> str:
        # Dataverse uses the resource scope pattern: {resource}/.default
        scopes = [f"{self.resource.rstrip('/')}/.default"]
        app = self._application()

        result = app.acquire_token_silent(scopes=scopes, account=None)
        if not result:
            result = app.acquire_token_for_client(scopes=scopes)

        access_token = result.get("access_token") if isinstance(result, dict) else None
        if not access_token:
            error = result.get("error") if isinstance(result, dict) else "unknown_error"
            desc = result.get("error_description") if isinstance(result, dict) else ""
            raise RuntimeError(f"Failed to acquire Dataverse token: {error} {desc}".strip())

        return access_token
