"""
Service catalog: credit prices per service type.

The ``service_types`` table is the authoritative price list. It is seeded from
``DEFAULT_SERVICE_TYPES`` at deployment and read once per process into
``catalog``; every cost lookup in the application goes through that instance.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..exceptions import UnknownServiceTypeError
from ..models import ServiceType

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_TYPES = [
    {
        "name": "text-to-3d-preview",
        "description": "Text to 3D (preview) - mesh generation",
        "credit_cost": 5,
    },
    {
        "name": "text-to-3d-optimized",
        "description": "Text to 3D (optimized) - texture generation",
        "credit_cost": 10,
    },
    {
        "name": "image-generation",
        "description": "Image to 3D model generation",
        "credit_cost": 5,
    },
]

@dataclass(frozen=True)
class ServiceEntry:
    id: int
    name: str
    description: Optional[str]
    credit_cost: int

def seed_service_types(db: Session, update_existing: bool = True) -> int:
    """Create missing default service types and, unless ``update_existing`` is
    False, reset existing rows to their defaults. Returns the number of rows touched."""
    touched = 0
    for default in DEFAULT_SERVICE_TYPES:
        row = db.query(ServiceType).filter(ServiceType.name == default["name"]).first()
        if row is None:
            db.add(ServiceType(**default))
            logger.info(f"Created service type {default['name']} ({default['credit_cost']} credits)")
        elif not update_existing:
            continue
        else:
            row.description = default["description"]
            row.credit_cost = default["credit_cost"]
        touched += 1
    db.commit()
    return touched

class ServiceCatalog:
    def __init__(self):
        self._entries: Dict[str, ServiceEntry] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self, db: Session) -> None:
        rows = (
            db.query(ServiceType)
            .filter(ServiceType.is_active == True)  # noqa: E712
            .order_by(ServiceType.credit_cost, ServiceType.name)
            .all()
        )
        self._entries = {
            row.name: ServiceEntry(id=row.id, name=row.name, description=row.description, credit_cost=row.credit_cost)
            for row in rows
        }
        self._loaded = True
        logger.info(f"Loaded {len(self._entries)} service types: {', '.join(self._entries)}")

    def ensure_loaded(self, db: Session) -> "ServiceCatalog":
        if not self._loaded:
            self.load(db)
        return self

    def reset(self) -> None:
        self._entries = {}
        self._loaded = False

    def get(self, name: str) -> ServiceEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise UnknownServiceTypeError(name)
        return entry

    def cost(self, name: str) -> int:
        return self.get(name).credit_cost

    def names(self) -> List[str]:
        return list(self._entries)

    def entries(self) -> List[ServiceEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.credit_cost, e.name))

catalog = ServiceCatalog()
