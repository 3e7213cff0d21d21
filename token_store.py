# token_store.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import Optional

import psycopg


@dataclass(frozen=True)
class StoredToken:
    user_id: str
    access_token: str
    expires_at: Optional[datetime]


def get_stored_token(
    database_url: str,
    *,
    user_id: Optional[str] = None,
    table: str = "facebook_tokens",
) -> Optional[StoredToken]:
    """Token row for a user, or the most recently updated row when no user is given."""
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            if user_id:
                cur.execute(
                    f"""
                    SELECT user_id, access_token, expires_at
                    FROM {table}
                    WHERE user_id = %s
                    """,
                    (user_id,),
                )
            else:
                cur.execute(
                    f"""
                    SELECT user_id, access_token, expires_at
                    FROM {table}
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """
                )
            row = cur.fetchone()
            if not row:
                return None
            uid, access_token, expires_at = row
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            return StoredToken(user_id=str(uid), access_token=access_token, expires_at=expires_at)


def get_valid_access_token(
    database_url: str,
    *,
    user_id: Optional[str] = None,
    refresh_buffer_minutes: int = 10,
) -> str:
    tok = get_stored_token(database_url, user_id=user_id)
    if not tok:
        who = f"user_id='{user_id}'" if user_id else "any user"
        raise RuntimeError(f"No token found in DB table facebook_tokens for {who}.")

    # Long-lived page/system tokens have no expiry.
    if tok.expires_at is None:
        return tok.access_token

    now = datetime.now(timezone.utc)
    if tok.expires_at <= now + timedelta(minutes=refresh_buffer_minutes):
        # The OAuth login flow owns refreshing; fail fast here.
        raise RuntimeError(
            f"Token in DB is expired/near-expiry (user_id={tok.user_id}, expires_at={tok.expires_at.isoformat()})."
        )

    return tok.access_token
