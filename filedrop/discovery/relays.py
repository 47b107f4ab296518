"""Nostr relay client used by the discovery job.

Speaks just enough of NIP-01 to run one-shot queries: a ``REQ`` is sent to a
random sample of relays, events are collected until each relay reports
``EOSE`` (or the maximum wait runs out) and the subscription is closed again.
"""

import asyncio
import hashlib
import json
import random
import re
import time
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import aiohttp
import bech32
from coincurve import PublicKeyXOnly

from filedrop.core.logging import get_logger

logger = get_logger(__name__)

CONTACT_LIST_KIND = 3

_HEX_PUBKEY = re.compile(r"^[0-9a-fA-F]{64}$")
_HEX_SIG = re.compile(r"^[0-9a-fA-F]{128}$")

Event = dict[str, Any]


class DiscoveryError(Exception):
    """Raised when a relay query could not be answered by any relay."""


def decode_pubkey(value: str) -> str:
    """Normalise a hex public key or bech32 ``npub`` to lowercase hex.

    Raises:
        ValueError: If the value is neither a 64 character hex key nor an npub
    """
    if not value or not isinstance(value, str):
        raise ValueError("A nostr pubkey or npub is required")

    candidate = value.strip()
    if _HEX_PUBKEY.match(candidate):
        return candidate.lower()

    if candidate.startswith("npub"):
        hrp, data = bech32.bech32_decode(candidate)
        if hrp != "npub" or data is None:
            raise ValueError("Invalid npub")
        decoded = bech32.convertbits(data, 5, 8, False)
        if decoded is None or len(decoded) != 32:
            raise ValueError("Invalid npub")
        return bytes(decoded).hex()

    raise ValueError("Unsupported pubkey format. Provide hex or npub.")


def to_npub(pubkey: str) -> str:
    """Encode a hex public key as an npub; returns the input if it cannot."""
    try:
        words = bech32.convertbits(bytes.fromhex(pubkey), 8, 5)
    except ValueError:
        return pubkey
    if words is None:
        return pubkey
    return bech32.bech32_encode("npub", words)


def compute_event_id(event: Mapping[str, Any]) -> str:
    """Compute the NIP-01 id of an event (sha256 of its canonical form)."""
    serialized = json.dumps(
        [
            0,
            event["pubkey"],
            event["created_at"],
            event["kind"],
            event["tags"],
            event["content"],
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def is_expired(event: Mapping[str, Any], now: float) -> bool:
    """True when the event carries an ``expiration`` tag in the past."""
    for tag in event.get("tags") or []:
        if isinstance(tag, list) and len(tag) > 1 and tag[0] == "expiration":
            try:
                return now > int(tag[1])
            except (TypeError, ValueError):
                return False
    return False


def _is_well_formed(event: Any) -> bool:
    if not isinstance(event, dict):
        return False
    return (
        isinstance(event.get("id"), str)
        and isinstance(event.get("pubkey"), str)
        and isinstance(event.get("created_at"), int)
        and isinstance(event.get("kind"), int)
        and isinstance(event.get("tags"), list)
        and isinstance(event.get("content"), str)
        and isinstance(event.get("sig"), str)
    )


def verify_event(event: Mapping[str, Any]) -> bool:
    """Check the id and BIP-340 Schnorr signature of an event.

    Events that cannot be serialised (for example content holding a lone
    surrogate) are reported as invalid rather than raising.
    """
    try:
        if compute_event_id(event) != event["id"]:
            return False
        if not _HEX_PUBKEY.match(event["pubkey"]) or not _HEX_SIG.match(event["sig"]):
            return False
        key = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return key.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, TypeError, ValueError):
        return False


def matches_filter(event: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """True when ``event`` satisfies a NIP-01 subscription filter."""
    if "ids" in query and event["id"] not in query["ids"]:
        return False
    if "authors" in query and event["pubkey"] not in query["authors"]:
        return False
    if "kinds" in query and event["kind"] not in query["kinds"]:
        return False
    if "since" in query and event["created_at"] < query["since"]:
        return False
    if "until" in query and event["created_at"] > query["until"]:
        return False

    for key, wanted in query.items():
        if not key.startswith("#") or len(key) != 2:
            continue
        values = {
            tag[1]
            for tag in event["tags"]
            if isinstance(tag, list)
            and len(tag) > 1
            and tag[0] == key[1]
            and isinstance(tag[1], str)
        }
        if values.isdisjoint(wanted):
            return False
    return True


def build_filter(
    authors: Sequence[str],
    kinds: Sequence[int],
    *,
    since: int | None = None,
    until: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Build a NIP-01 subscription filter, omitting unset bounds."""
    query: dict[str, Any] = {"authors": list(authors), "kinds": list(kinds)}
    if since is not None:
        query["since"] = since
    if until is not None:
        query["until"] = until
    if limit is not None:
        query["limit"] = limit
    return query


class RelayPool:
    """Runs one-shot queries against a random sample of Nostr relays."""

    def __init__(
        self,
        relays: Sequence[str],
        relay_count: int = 8,
        connect_timeout: float = 7.0,
        max_wait: float = 15.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the relay pool.

        Args:
            relays: Candidate relay websocket URLs
            relay_count: Number of relays sampled per discovery pass
            connect_timeout: Seconds allowed for a websocket handshake
            max_wait: Seconds to wait for a relay to finish answering
            rng: Random source used for relay sampling
            clock: Wall clock returning epoch seconds
        """
        self.relays = list(relays)
        self.relay_count = relay_count
        self.connect_timeout = connect_timeout
        self.max_wait = max_wait
        self.rng = rng or random.Random()
        self.clock = clock

    def sample_relays(self, count: int | None = None) -> list[str]:
        """Pick a random subset of the configured relays."""
        count = self.relay_count if count is None else count
        return self.rng.sample(self.relays, min(count, len(self.relays)))

    async def query(
        self, query: Mapping[str, Any], relays: Sequence[str] | None = None
    ) -> list[Event]:
        """Send ``query`` to every relay and merge the answers.

        Events are deduplicated by id. Events outside the filter, with a
        wrong id or signature, or with an expiration in the past are
        dropped. Newest events come first.

        Raises:
            DiscoveryError: If every relay failed
        """
        targets = list(relays) if relays is not None else self.sample_relays()
        if not targets:
            raise DiscoveryError("No relays configured")

        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self.connect_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            answers = await asyncio.gather(
                *(self._query_relay(session, relay, query) for relay in targets),
                return_exceptions=True,
            )

        failures = 0
        merged: dict[str, Event] = {}
        for relay, answer in zip(targets, answers):
            if isinstance(answer, BaseException):
                failures += 1
                logger.debug("relay_query_failed", relay=relay, error=str(answer))
                continue
            for event in answer:
                merged.setdefault(event["id"], event)

        if failures == len(targets):
            raise DiscoveryError(f"All {failures} relays failed to answer")

        return self._finalize(merged.values())

    def _finalize(self, events: Iterable[Event]) -> list[Event]:
        now = self.clock()
        live = [event for event in events if not is_expired(event, now)]
        return sorted(live, key=lambda event: event["created_at"], reverse=True)

    async def _query_relay(
        self,
        session: aiohttp.ClientSession,
        relay: str,
        query: Mapping[str, Any],
    ) -> list[Event]:
        """Run a single REQ against one relay until EOSE or the maximum wait."""
        sub_id = uuid.uuid4().hex[:16]
        events: list[Event] = []

        ws = await asyncio.wait_for(
            session.ws_connect(relay, heartbeat=30.0), self.connect_timeout
        )
        try:
            await ws.send_json(["REQ", sub_id, dict(query)])
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.max_wait

            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    message = await ws.receive(timeout=remaining)
                except asyncio.TimeoutError:
                    break

                if message.type in (
                    aiohttp.WSMsgType.CLOSE,
                    aiohttp.WSMsgType.CLOSED,
                    aiohttp.WSMsgType.CLOSING,
                    aiohttp.WSMsgType.ERROR,
                ):
                    break
                if message.type != aiohttp.WSMsgType.TEXT:
                    continue

                try:
                    frame = json.loads(message.data)
                except ValueError:
                    continue
                if not isinstance(frame, list) or len(frame) < 2:
                    continue

                kind, frame_sub = frame[0], frame[1]
                if frame_sub != sub_id:
                    continue
                if kind == "EVENT" and len(frame) > 2:
                    event = frame[2]
                    if (
                        _is_well_formed(event)
                        and matches_filter(event, query)
                        and verify_event(event)
                    ):
                        events.append(event)
                    else:
                        logger.debug("relay_event_rejected", relay=relay)
                elif kind in ("EOSE", "CLOSED"):
                    break

            if not ws.closed:
                await ws.send_json(["CLOSE", sub_id])
        finally:
            await ws.close()

        return events

    async def fetch_all(
        self,
        authors: Sequence[str],
        kinds: Sequence[int],
        relays: Sequence[str] | None = None,
        page_size: int = 250,
        max_pages: int = 100,
    ) -> list[Event]:
        """Page backwards through the history of ``authors``.

        Stops on an empty page, when the time cursor stops moving, or after
        ``max_pages`` pages.
        """
        collected: dict[str, Event] = {}
        until = int(self.clock())

        for _ in range(max_pages):
            page = await self.query(
                build_filter(authors, kinds, until=until, limit=page_size), relays
            )
            if not page:
                break

            for event in page:
                collected.setdefault(event["id"], event)

            oldest = min(event["created_at"] for event in page)
            if oldest >= until:
                break
            until = oldest - 1

        return sorted(
            collected.values(), key=lambda event: event["created_at"], reverse=True
        )

    async def fetch_follows(
        self, pubkey: str, relays: Sequence[str] | None = None
    ) -> list[str]:
        """Return the hex keys referenced by the newest contact list of ``pubkey``."""
        events = await self.query(
            build_filter([pubkey], [CONTACT_LIST_KIND], limit=1), relays
        )
        if not events:
            return []

        follows: dict[str, None] = {}
        for tag in events[0]["tags"]:
            if (
                isinstance(tag, list)
                and len(tag) > 1
                and tag[0] == "p"
                and isinstance(tag[1], str)
                and _HEX_PUBKEY.match(tag[1])
            ):
                follows.setdefault(tag[1].lower(), None)
        return list(follows)
