"""
Chain state and delegate directory backed by the node's public HTTP API.

Endpoints used (responses are wrapped in {"data": ...}):

    GET /api/blocks/last                    last applied block
    GET /api/blocks/<height>                block at a height
    GET /api/node/configuration/crypto      network milestones
    GET /api/delegates/<name|publicKey>     delegate, incl. blocks.last
    GET /api/rounds/<round>/delegates       stored delegates of a round
"""

import logging
from typing import List, Optional
from urllib.parse import quote

import httpx

from forge_tracker import LastBlock, ParticipantNotFound, ParticipantRecord
from identities import public_key_from_passphrase
from round_order import BlockData, Milestone, RoundInfo, parse_epoch, shuffle_participants

log = logging.getLogger("round_monitor.node")


class NodeApiError(RuntimeError):
    """The node answered with something the monitor cannot work with."""


def _epoch_seconds(value) -> int:
    # Timestamps come either as a plain integer or as {"epoch", "unix", "human"}.
    if isinstance(value, dict):
        value = value.get("epoch")
    if value is None:
        raise NodeApiError("block without timestamp")
    return int(value)


class NodeApi:
    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def get(self, path: str):
        """Return the ``data`` member of the response, or None on 404."""
        r = self._client.get(path)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        try:
            payload = r.json()
        except ValueError:
            snippet = r.text[:200]
            raise NodeApiError(f"{path} returned non-JSON: {snippet!r}") from None
        if not isinstance(payload, dict) or "data" not in payload:
            raise NodeApiError(f"{path} returned no data member")
        return payload["data"]

    def close(self) -> None:
        self._client.close()


# ── Chain state ───────────────────────────────────────────────────────────────

def _block(data: dict) -> BlockData:
    generator = data.get("generator") or {}
    return BlockData(
        height=int(data["height"]),
        timestamp=_epoch_seconds(data.get("timestamp")),
        producer_identity=generator.get("publicKey"),
    )


class NodeChainState:
    def __init__(self, api: NodeApi):
        self.api = api
        self._milestones: Optional[List[dict]] = None

    def get_last_block(self) -> BlockData:
        data = self.api.get("/api/blocks/last")
        if not data:
            raise NodeApiError("node has no last block")
        return _block(data)

    def get_block_at(self, height: int) -> Optional[BlockData]:
        data = self.api.get(f"/api/blocks/{int(height)}")
        return _block(data) if data else None

    def _load_milestones(self) -> List[dict]:
        if self._milestones is None:
            data = self.api.get("/api/node/configuration/crypto")
            milestones = (data or {}).get("milestones")
            if not milestones:
                raise NodeApiError("node configuration has no milestones")
            self._milestones = sorted(milestones, key=lambda m: int(m.get("height", 1)))
        return self._milestones

    def get_milestone_at(self, height: int) -> Milestone:
        """Milestones are cumulative: later ones only override the keys they carry."""
        merged: dict = {}
        for milestone in self._load_milestones():
            if int(milestone.get("height", 1)) > height:
                break
            merged.update(milestone)
        for key in ("blocktime", "activeDelegates", "epoch"):
            if key not in merged:
                raise NodeApiError(f"no {key} in effect at height {height}")
        return Milestone(
            height=int(merged.get("height", 1)),
            block_time=int(merged["blocktime"]),
            max_participants=int(merged["activeDelegates"]),
            epoch=parse_epoch(merged["epoch"]),
        )


# ── Delegate directory ────────────────────────────────────────────────────────

def _record(data: dict) -> ParticipantRecord:
    last = ((data.get("blocks") or {}).get("last")) or None
    last_block = None
    if last and last.get("height"):
        last_block = LastBlock(height=int(last["height"]), timestamp=_epoch_seconds(last.get("timestamp")))
    return ParticipantRecord(
        name=data.get("username"),
        public_identity=data["publicKey"],
        last_block=last_block,
    )


class NodeDirectory:
    def __init__(self, api: NodeApi):
        self.api = api

    def resolve_identity(self, secret: str) -> str:
        return public_key_from_passphrase(secret)

    def _find(self, identifier: str) -> ParticipantRecord:
        data = self.api.get(f"/api/delegates/{quote(identifier, safe='')}")
        if not data:
            raise ParticipantNotFound(identifier)
        return _record(data)

    def find_by_name(self, name: str) -> ParticipantRecord:
        return self._find(name)

    def find_by_identity(self, public_identity: str) -> ParticipantRecord:
        return self._find(public_identity)

    def get_active_participants(self, round_info: RoundInfo) -> List[ParticipantRecord]:
        """Delegates of the round in forging order."""
        data = self.api.get(f"/api/rounds/{int(round_info.round)}/delegates")
        if not data:
            raise NodeApiError(f"no delegates stored for round {round_info.round}")
        records = []
        for entry in data:
            public_key = entry["publicKey"]
            try:
                records.append(self.find_by_identity(public_key))
            except ParticipantNotFound:
                log.warning("round %d delegate %s has no wallet, showing its key",
                            round_info.round, public_key)
                records.append(ParticipantRecord(name=public_key, public_identity=public_key))
        return shuffle_participants(records, round_info.round)
