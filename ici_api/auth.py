from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import Unauthenticated, Unauthorized
from .keystore import KeyStore, hash_key
from .models import KeyRecord
from .snapshot import SnapshotCache

security = HTTPBearer(auto_error=False)


def get_keystore(request: Request) -> KeyStore:
    return request.app.state.keystore


def get_cache(request: Request) -> SnapshotCache:
    return request.app.state.snapshot_cache


def require_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    keystore: KeyStore = Depends(get_keystore),
) -> KeyRecord:
    """Resolve the bearer token to an active key record."""
    if credentials is None or not credentials.credentials:
        raise Unauthenticated()
    record = keystore.lookup_by_hash(hash_key(credentials.credentials))
    if record is None or not record.is_active:
        raise Unauthorized()
    return record
