"""Eligible collateral collections and the loan terms attached to each."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from eth_utils import is_address, to_checksum_address

from .errors import NotEligible

LOGGER = logging.getLogger("nft-lending.registry")

# Repayment multipliers follow the lending contract's repayment-to-loan ratios (3.5/3 and 2.4/2).
# Advance fractions are deployment defaults; override them with COLLATERAL_REGISTRY.
DEFAULT_COLLECTIONS: List[Dict[str, Any]] = [
    {
        "collectionId": "0xBC4CA0EdA7647A8aB7C2061c2E118A18a936f13D",
        "name": "Bored Ape Yacht Club",
        "advanceFraction": "0.6",
        "repaymentMultiplier": "1.166666666666666666666666666667",
    },
    {
        "collectionId": "0xb47e3cd837dDF8e4c57F05d70Ab865de6e193BBB",
        "name": "CryptoPunks",
        "advanceFraction": "0.7",
        "repaymentMultiplier": "1.2",
    },
]


def normalize_collection(collection_id: str) -> str:
    candidate = str(collection_id or "").strip()
    if not is_address(candidate):
        raise NotEligible("collection id is not a valid address", {"collectionId": candidate})
    return to_checksum_address(candidate)


@dataclass(frozen=True)
class CollateralTerms:
    collection_id: str
    advance_fraction: Decimal
    repayment_multiplier: Decimal
    name: str = ""

    def __post_init__(self) -> None:
        if not (Decimal(0) < self.advance_fraction <= Decimal(1)):
            raise ValueError(f"advance fraction for {self.collection_id} must be in (0, 1]")
        if self.repayment_multiplier < Decimal(1):
            raise ValueError(f"repayment multiplier for {self.collection_id} must be >= 1")

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CollateralTerms":
        try:
            raw_id = payload["collectionId"]
            fraction = Decimal(str(payload["advanceFraction"]))
            multiplier = Decimal(str(payload["repaymentMultiplier"]))
        except KeyError as exc:
            raise ValueError(f"collateral terms missing field {exc.args[0]}") from exc
        if not is_address(raw_id):
            raise ValueError(f"invalid collection id {raw_id!r}")
        return cls(
            collection_id=to_checksum_address(raw_id),
            advance_fraction=fraction,
            repayment_multiplier=multiplier,
            name=str(payload.get("name") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collectionId": self.collection_id,
            "name": self.name,
            "advanceFraction": str(self.advance_fraction),
            "repaymentMultiplier": str(self.repayment_multiplier),
        }


class EligibilityRegistry:
    """Read-only after loading; registration happens at configuration time."""

    def __init__(self, terms: Iterable[CollateralTerms] = ()) -> None:
        self._terms: Dict[str, CollateralTerms] = {}
        for entry in terms:
            self.register(entry)

    def register(self, terms: CollateralTerms) -> None:
        key = terms.collection_id.lower()
        if key in self._terms:
            raise ValueError(f"collection {terms.collection_id} registered twice")
        self._terms[key] = terms

    def is_eligible(self, collection_id: str) -> bool:
        return str(collection_id or "").strip().lower() in self._terms

    def terms_for(self, collection_id: str) -> CollateralTerms:
        terms = self._terms.get(str(collection_id or "").strip().lower())
        if terms is None:
            raise NotEligible("collection is not accepted as collateral", {"collectionId": collection_id})
        return terms

    def collections(self) -> List[CollateralTerms]:
        return list(self._terms.values())

    @classmethod
    def from_file(cls, path: str) -> "EligibilityRegistry":
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        entries = payload.get("collections", []) if isinstance(payload, dict) else payload
        return cls(CollateralTerms.from_dict(entry) for entry in entries)

    @classmethod
    def from_config(cls, registry_path: Optional[str]) -> "EligibilityRegistry":
        if registry_path:
            registry = cls.from_file(registry_path)
            LOGGER.info("Loaded %s collateral collections from %s", len(registry.collections()), registry_path)
            return registry
        return cls(CollateralTerms.from_dict(entry) for entry in DEFAULT_COLLECTIONS)


__all__ = ["CollateralTerms", "EligibilityRegistry", "normalize_collection"]
