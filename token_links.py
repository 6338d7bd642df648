# token_links.py - opaque single-use download tokens
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from errors import Denied, DenialReason
from models import DownloadToken, utcnow
from storage import DeliveryStore

log = logging.getLogger("token_links")

TOKEN_BYTES = 24  # 192 bits, hex encoded


def new_token_id() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def make_download_link(base_url: str, token_id: str) -> str:
    return f"{base_url.rstrip('/')}/download/{token_id}"


class TokenLedger:
    """Issues, looks up and redeems download tokens.

    Expiry is fixed when a token is issued. With `expire_after_download` on,
    the first successful redemption stamps `used_at` and every later attempt
    is denied; with it off a token stays valid until it expires.
    """

    def __init__(
        self,
        store: DeliveryStore,
        expire_after_download: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.expire_after_download = expire_after_download
        self.clock = clock

    def issue(self, order_id: int, product_id: int, file_name: str, ttl: timedelta) -> DownloadToken:
        now = self.clock()
        token = DownloadToken(
            token=new_token_id(),
            order_id=order_id,
            product_id=product_id,
            file_name=file_name,
            expires_at=now + ttl,
            used_at=None,
            created_at=now,
        )
        # a collision propagates as TokenCollisionError
        self.store.insert_token(token)
        log.info("Issued token for order %s item %s (expires %s)", order_id, product_id, token.expires_at.isoformat())
        return token

    def lookup(self, token_id: str) -> Optional[DownloadToken]:
        return self.store.get_token(token_id)

    def _evaluate(self, token: Optional[DownloadToken], now: datetime) -> DownloadToken:
        if token is None:
            raise Denied(DenialReason.NOT_FOUND, "Link not found.", 404)
        if token.is_expired(now):
            raise Denied(DenialReason.EXPIRED, "Link expired.", token=token)
        if self.expire_after_download and token.used_at is not None:
            raise Denied(DenialReason.ALREADY_USED, "Link already used.", token=token)
        return token

    def check(self, token_id: str, now: Optional[datetime] = None) -> DownloadToken:
        """Validate without redeeming. Raises Denied."""
        now = now or self.clock()
        return self._evaluate(self.lookup(token_id), now)

    def redeem(self, token_id: str, now: Optional[datetime] = None) -> DownloadToken:
        """Validate and, under the single-use policy, mark the token used.

        The used marker is set by a compare-and-set in the store, so two
        concurrent redemptions of the same token cannot both succeed.
        """
        now = now or self.clock()
        token = self._evaluate(self.lookup(token_id), now)
        if not self.expire_after_download:
            return token
        updated = self.store.mark_token_used(token_id, now)
        if updated is None:
            raise Denied(DenialReason.ALREADY_USED, "Link already used.", token=token)
        return updated

    def release(self, token: DownloadToken) -> bool:
        """Undo a redemption that could not be served. Only our own mark is cleared."""
        if token.used_at is None:
            return False
        return self.store.release_token(token.token, token.used_at)

    def list_by_order(self, order_id: int) -> List[DownloadToken]:
        return self.store.list_tokens(order_id)
