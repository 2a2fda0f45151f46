# src/engine/targets.py
"""
Target resolution: turns a job configuration into the ordered list of
endpoints the runner iterates. Asset references are looked up when resolve()
is called, so a job always works against current asset addresses.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from engine.errors import EmptyTargetSet
from engine.models import Asset


@dataclass(frozen=True)
class Target:
    value: str
    kind: str = "endpoint"  # endpoint | asset
    asset_id: Optional[str] = None


def asset_address(asset) -> str:
    return asset.ip_address or asset.hostname or asset.name


class AssetStore(ABC):
    @abstractmethod
    def resolve_assets(self, ids: List[str]) -> List[Dict[str, str]]:
        """Return [{id, address, name}] for the known ids, in store order."""

    @abstractmethod
    def get_asset(self, asset_id: str) -> Optional[dict]:
        pass


class SqlAssetStore(AssetStore):
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def resolve_assets(self, ids):
        if not ids:
            return []
        db = self.session_factory()
        try:
            assets = db.query(Asset).filter(Asset.id.in_(list(ids))).all()
        finally:
            db.close()
        by_id = {asset.id: asset for asset in assets}
        resolved = []
        seen = set()
        # requested order, duplicates and unknown ids dropped
        for asset_id in ids:
            asset = by_id.get(asset_id)
            if asset is None or asset_id in seen:
                continue
            seen.add(asset_id)
            resolved.append({"id": asset.id, "address": asset_address(asset), "name": asset.name})
        return resolved

    def get_asset(self, asset_id):
        db = self.session_factory()
        try:
            asset = db.query(Asset).filter(Asset.id == asset_id).first()
        finally:
            db.close()
        if asset is None:
            return None
        return {
            "id": asset.id,
            "name": asset.name,
            "type": asset.type,
            "criticality": asset.criticality,
            "ip_address": asset.ip_address,
            "hostname": asset.hostname,
            "operating_system": asset.operating_system,
        }


class TargetResolver:
    def __init__(self, asset_store: AssetStore):
        self.asset_store = asset_store

    def resolve(self, configuration: dict) -> List[Target]:
        targets = [
            Target(value=endpoint.strip())
            for endpoint in configuration.get("targets") or []
            if endpoint and endpoint.strip()
        ]
        asset_ids = configuration.get("asset_ids") or []
        for asset in self.asset_store.resolve_assets(asset_ids):
            targets.append(Target(value=asset["address"], kind="asset", asset_id=asset["id"]))
        if not targets:
            raise EmptyTargetSet()
        return targets
