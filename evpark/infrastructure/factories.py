# File: evpark/infrastructure/factories.py
"""
Factories for chargers, demo data and store instances

1. ChargerFactory - builds Charger records from table-style values
2. DemoSeeder - adds the two demo chargers and a starter config where missing
3. create_store - picks the store implementation for a URL
"""

from typing import List, Optional, Dict, Union, Sequence
import logging

from ..domain.models import Charger, SlotTime
from .repositories import TableStore, InMemoryTableStore, SQLAlchemyTableStore


MEMORY_STORE_URL = "memory://"


class ChargerFactory:
    """Builds chargers from the values kept in the chargers table"""

    def create(
        self,
        charger_id: str,
        name: Optional[str] = None,
        max_minutes: int = 60,
        slot_starts: Union[str, Sequence[str]] = ""
    ) -> Charger:
        if isinstance(slot_starts, str):
            slots = Charger.parse_slot_starts(slot_starts)
        else:
            slots = [SlotTime.parse(item) for item in slot_starts]
        return Charger(
            id=str(charger_id),
            name=name or f"Charger {charger_id}",
            max_minutes=int(max_minutes),
            slot_starts=slots,
        )

    def create_demo_fleet(self) -> List[Charger]:
        return [
            self.create("1", "Charger 1", 60, "06:00,08:00,10:00,12:00,14:00,16:00"),
            self.create("2", "Charger 2", 90, "07:00,09:00,11:00,13:00,15:00"),
        ]


class DemoSeeder:
    """
    Seeds a store with demo chargers and a starter config

    Only fills gaps: chargers already in the table and config keys that
    already have a value are left as they are.
    """

    def __init__(self, store: TableStore, charger_factory: Optional[ChargerFactory] = None):
        self.store = store
        self.charger_factory = charger_factory or ChargerFactory()
        self._logger = logging.getLogger(self.__class__.__name__)

    def seed(self, admin_email: str, allowed_domain: str = "example.com") -> Dict[str, object]:
        self.store.initialize()
        existing = {charger.id for charger in self.store.chargers.list()}
        added = []
        for charger in self.charger_factory.create_demo_fleet():
            if charger.id in existing:
                continue
            self.store.chargers.add(charger)
            added.append(charger.id)

        starter_config = {
            "allowed_domain": allowed_domain,
            "admin_emails": admin_email,
            "reservation_open_hour": "6",
            "reservation_open_minute": "0",
        }
        current = self.store.get_config()
        applied = {}
        for key, value in starter_config.items():
            if str(current.get(key) or "").strip():
                continue
            self.store.set_config(key, value)
            applied[key] = value

        self._logger.info(f"Seeded chargers {added} and config keys {sorted(applied)}")
        return {"chargers": added, "config": applied}


def create_store(url: str) -> TableStore:
    """In-memory store for memory://, SQLAlchemy for everything else"""
    if url == MEMORY_STORE_URL:
        return InMemoryTableStore()
    return SQLAlchemyTableStore(url)
