import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .models import MoneyLike, to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitPrice:
    """Price of `per` units of `unit` for one service operation"""
    price: Decimal
    unit: str
    per: int = 1

    def cost_for(self, units: MoneyLike) -> Decimal:
        return to_money(Decimal(str(units)) * self.price / self.per)


# Service -> operation -> unit price. Indicative list prices, overridable via PRICE_TABLE_PATH.
DEFAULT_PRICES: Dict[str, Dict[str, Dict[str, Union[str, int]]]] = {
    "rekognition": {
        "detect_labels": {"price": "0.001", "unit": "image"},
        "detect_text": {"price": "0.001", "unit": "image"},
        "detect_faces": {"price": "0.001", "unit": "image"},
        "detect_moderation_labels": {"price": "0.001", "unit": "image"},
        "video_label_detection": {"price": "0.10", "unit": "minute"},
        "video_face_detection": {"price": "0.10", "unit": "minute"},
        "video_content_moderation": {"price": "0.10", "unit": "minute"},
        "video_segment_detection": {"price": "0.05", "unit": "minute"},
    },
    "transcribe": {
        "transcription": {"price": "0.024", "unit": "minute"},
    },
    "comprehend": {
        "detect_sentiment": {"price": "0.0001", "unit": "character", "per": 100},
        "detect_entities": {"price": "0.0001", "unit": "character", "per": 100},
        "detect_key_phrases": {"price": "0.0001", "unit": "character", "per": 100},
    },
    "s3": {
        "put_object": {"price": "0.005", "unit": "request", "per": 1000},
        "get_object": {"price": "0.0004", "unit": "request", "per": 1000},
        "storage": {"price": "0.023", "unit": "gb_month"},
    },
    "openai": {
        "embedding": {"price": "0.0001", "unit": "token", "per": 1000},
    },
}


class PriceTable:
    """Static (service, operation) -> unit price lookup"""

    def __init__(self, prices: Optional[Dict[str, Dict[str, Dict[str, Union[str, int]]]]] = None):
        raw = prices if prices is not None else DEFAULT_PRICES
        self._prices: Dict[Tuple[str, str], UnitPrice] = {}

        for service, operations in raw.items():
            for operation, entry in operations.items():
                self._prices[(service, operation)] = UnitPrice(
                    price=Decimal(str(entry["price"])),
                    unit=str(entry.get("unit", "unit")),
                    per=int(entry.get("per", 1)),
                )

        logger.info(f"Price table loaded: {len(self._prices)} priced operations")

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PriceTable":
        """Load a JSON price table: {service: {operation: {price, unit, per}}}"""
        with open(path, "r", encoding="utf-8") as f:
            prices = json.load(f)
        logger.info(f"Loading price table from {path}")
        return cls(prices)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> "PriceTable":
        """Load from `path` if given, otherwise the built-in defaults"""
        if path:
            return cls.from_file(path)
        return cls()

    def get(self, service: str, operation: str) -> Optional[UnitPrice]:
        return self._prices.get((service, operation))

    def cost_for(self, service: str, operation: str, units: MoneyLike) -> Decimal:
        """Price `units` of an operation; unknown operations cost zero"""
        unit_price = self.get(service, operation)
        if unit_price is None:
            logger.error(
                f"Pricing configuration defect: no price for {service}.{operation}, treating as zero cost"
            )
            return to_money(0)
        return unit_price.cost_for(units)

    def services(self) -> Dict[str, Dict[str, UnitPrice]]:
        result: Dict[str, Dict[str, UnitPrice]] = {}
        for (service, operation), unit_price in self._prices.items():
            result.setdefault(service, {})[operation] = unit_price
        return result

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._prices

    def __len__(self) -> int:
        return len(self._prices)
