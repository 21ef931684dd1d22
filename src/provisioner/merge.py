"""Snapshot merging rules.

Precedence when combining a prior snapshot with a freshly fetched one:

- slug: prior if it has one, else fresh (assigned once, never changes)
- one-time credentials (user, password, url): prior if it has them; reads
  return them blank and must never overwrite captured values
- everything else: fresh
"""

from __future__ import annotations

from urllib.parse import quote, urlunsplit

from pydantic import SecretStr

from .models import ClusterAccess, ClusterDescriptor, ClusterSnapshot


def build_access_url(scheme: str, host: str, username: str, password: str) -> str:
    """Build a connection URL with credentials embedded in the userinfo.

    Credentials are percent-encoded so passwords with reserved characters
    survive the round trip.
    """
    userinfo = ""
    if username:
        userinfo = quote(username, safe="")
        if password:
            userinfo += ":" + quote(password, safe="")
        userinfo += "@"
    return urlunsplit((scheme or "https", f"{userinfo}{host}", "", "", ""))


def _merge_access(prior: ClusterAccess | None, fresh: ClusterAccess) -> ClusterAccess:
    if prior is None:
        return fresh.model_copy()
    return fresh.model_copy(
        update={
            "username": prior.username or fresh.username,
            "password": prior.password or fresh.password,
            "url": prior.url or fresh.url,
        }
    )


def merge_snapshots(prior: ClusterSnapshot | None, fresh: ClusterSnapshot) -> ClusterSnapshot:
    """Combine a prior snapshot with a freshly observed one.

    Applied identically after create, update and read.
    """
    if prior is None:
        return fresh.model_copy(deep=True)

    return fresh.model_copy(
        update={
            "slug": prior.slug or fresh.slug,
            "access": _merge_access(prior.access, fresh.access),
            # Creation-only fields are not repeated by reads
            "message": fresh.message or prior.message,
            "monitor": fresh.monitor or prior.monitor,
        },
        deep=True,
    )


def overlay_desired(snapshot: ClusterSnapshot, descriptor: ClusterDescriptor) -> ClusterSnapshot:
    """Overlay the caller's desired references onto a snapshot.

    The creation response omits or only partially echoes the references
    the caller chose; the persisted snapshot must carry what was asked for.
    """
    update: dict = {"name": descriptor.name}
    if descriptor.plan:
        update["plan"] = snapshot.plan.model_copy(update={"slug": descriptor.plan})
    if descriptor.space:
        update["space"] = snapshot.space.model_copy(update={"path": descriptor.space})
    if descriptor.release:
        update["release"] = snapshot.release.model_copy(update={"slug": descriptor.release})
    return snapshot.model_copy(update=update)


def with_connection_url(snapshot: ClusterSnapshot) -> ClusterSnapshot:
    """Synthesize the full connection URL from host, scheme and captured credentials."""
    access = snapshot.access
    if not access.has_credentials or not access.host:
        return snapshot

    url = build_access_url(
        access.scheme,
        access.host,
        access.username.get_secret_value(),
        access.password.get_secret_value(),
    )
    return snapshot.model_copy(
        update={"access": access.model_copy(update={"url": SecretStr(url)})}
    )
