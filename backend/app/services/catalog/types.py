"""Catalog value types. Same shape regardless of which commerce platform backs the gateway."""
import re
from typing import Any

_GID_RE = re.compile(r"^gid://shopify/(\w+)/(\d+)$")
_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")


def to_gid(kind: str, raw: Any) -> str | None:
    """Normalize a numeric id or GID into gid://shopify/<kind>/<n>. None if no id can be found."""
    if raw is None:
        return None
    s = str(raw).strip()
    m = _GID_RE.match(s)
    if m:
        return f"gid://shopify/{kind}/{m.group(2)}"
    m = _TRAILING_DIGITS_RE.search(s)
    if not m:
        return None
    return f"gid://shopify/{kind}/{m.group(1)}"


def gid_num(gid: str | None) -> str:
    """Trailing numeric part of a GID (or the input itself when already numeric)."""
    m = _TRAILING_DIGITS_RE.search(gid or "")
    return m.group(1) if m else ""


class ShopSession:
    """Bearer credential for one shop (offline access token)."""

    __slots__ = ("shop", "access_token")

    def __init__(self, shop: str, access_token: str) -> None:
        self.shop = shop
        self.access_token = access_token

    def __repr__(self) -> str:
        return f"ShopSession(shop={self.shop!r})"

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, ShopSession)
            and other.shop == self.shop
            and other.access_token == self.access_token
        )

    def __hash__(self) -> int:
        return hash((self.shop, self.access_token))


class CatalogCollection:
    __slots__ = ("id", "title")

    def __init__(self, *, id: str, title: str) -> None:
        self.id = id
        self.title = title

    def to_row(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title}


class CatalogProduct:
    """One product as the scheduler snapshots it (title and image taken at scheduling time)."""

    __slots__ = ("id", "title", "image_url")

    def __init__(self, *, id: str, title: str, image_url: str | None = None) -> None:
        self.id = id
        self.title = title
        self.image_url = image_url

    def to_row(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "image_url": self.image_url}


class ShopKey:
    """The shop-level metafield the publisher owns: owner GID, instance GID (if it exists), value."""

    __slots__ = ("owner_id", "instance_id", "value")

    def __init__(self, *, owner_id: str, instance_id: str | None = None, value: str | None = None) -> None:
        self.owner_id = owner_id
        self.instance_id = instance_id
        self.value = value
