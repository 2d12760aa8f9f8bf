import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

from store_assistant.models import Availability, NearbyStock

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371
NEARBY_RADIUS_KM = 50
MAX_NEARBY_STORES = 3


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _store_code(store: Dict[str, Any]) -> str:
    return str(store.get("store_id") or store.get("id") or store.get("code") or "")


def _coordinates(store: Dict[str, Any]):
    coords = store.get("coordinates") or {}
    lat, lon = coords.get("latitude"), coords.get("longitude")
    if lat is None or lon is None:
        return None
    return float(lat), float(lon)


class AvailabilityService:
    """This-store and nearby-store stock, read from a store list and an inventory file.

    Inventory maps store id to {sku: qty}. Missing entries count as zero stock.
    """

    def __init__(self, stores: Optional[List[Dict[str, Any]]] = None,
                 inventory: Optional[Dict[str, Dict[str, int]]] = None):
        self.stores = stores or []
        self.inventory = inventory or {}

    @classmethod
    def from_files(cls, stores_file: Path, inventory_file: Path) -> "AvailabilityService":
        stores, inventory = [], {}
        try:
            with open(stores_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            stores = data.get("stores", []) if isinstance(data, dict) else data
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Store list unavailable at {stores_file}: {e}")
        try:
            with open(inventory_file, 'r', encoding='utf-8') as f:
                inventory = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Inventory unavailable at {inventory_file}: {e}")
        logger.info(f"Availability service loaded {len(stores)} stores")
        return cls(stores, inventory)

    def _find_store(self, store_id: str) -> Optional[Dict[str, Any]]:
        wanted = str(store_id).lower()
        for store in self.stores:
            if _store_code(store).lower() == wanted:
                return store
        for store in self.stores:
            if wanted in str(store.get("name", "")).lower():
                return store
        return None

    def _qty(self, store_id: str, sku: str) -> int:
        try:
            return int(self.inventory.get(store_id, {}).get(str(sku), 0))
        except (TypeError, ValueError):
            return 0

    async def get_availability(self, sku: str, store_id: Optional[str]) -> Availability:
        """Stock for `sku` at `store_id` plus up to three stocked stores within 50 km."""
        logger.info(f"Checking availability for SKU: {sku}, Store: {store_id}")
        if not store_id or not self.stores:
            return Availability(sku=sku)

        try:
            selected = self._find_store(store_id)
            if selected is None:
                logger.warning(f"Store {store_id} not found in store data")
                return Availability(sku=sku, store_id=store_id, fulfilment=f"Store {store_id} not found")

            selected_code = _store_code(selected)
            this_qty = self._qty(selected_code, sku)
            nearby: List[NearbyStock] = []
            origin = _coordinates(selected)

            if origin:
                for store in self.stores:
                    code = _store_code(store)
                    point = _coordinates(store)
                    if code.lower() == selected_code.lower() or point is None:
                        continue
                    distance = haversine_km(origin[0], origin[1], point[0], point[1])
                    qty = self._qty(code, sku)
                    if distance <= NEARBY_RADIUS_KM and qty > 0:
                        nearby.append(NearbyStock(
                            store_id=code,
                            store_name=store.get("name") or "Unknown Store",
                            qty=qty,
                            distance_km=round(distance, 1),
                        ))
                nearby.sort(key=lambda s: s.distance_km)
                nearby = nearby[:MAX_NEARBY_STORES]

            if this_qty > 0:
                fulfilment = f"Available in store ({this_qty} units)"
            else:
                fulfilment = "Out of stock - check nearby stores" if origin else "Out of stock"

            return Availability(sku=sku, store_id=selected_code, this_store_qty=this_qty,
                                nearby=nearby, fulfilment=fulfilment)
        except Exception as e:
            logger.exception(f"Error getting availability for SKU {sku}: {e}")
            return Availability(sku=sku, store_id=store_id, fulfilment="Error checking availability")
