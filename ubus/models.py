"""
Directory record schemas.

Each model maps to a collection in the directory store. Stored documents keep
the camelCase field names of the original documents; Python code uses the
snake_case attribute names.

- User  -> "users"  (document id = uid)
- Route -> "routes"
- Bus   -> "buses"
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

USERS = "users"
ROUTES = "routes"
BUSES = "buses"

COLLECTIONS = (USERS, ROUTES, BUSES)


class Role(str, Enum):
    STUDENT = "student"
    DRIVER = "driver"
    ADMIN = "admin"


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]):
        return cls.model_validate(doc)

    def to_doc(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Location(Document):
    """A single position sample; always written as a whole."""

    lat: float
    lng: float
    timestamp: int = Field(..., description="Epoch milliseconds")


class User(Document):
    uid: str
    email: str
    role: Role
    name: str
    college_id: str = Field(..., alias="collegeId")
    route_number: Optional[str] = Field(None, alias="routeNumber")

    def to_doc(self) -> Dict[str, Any]:
        doc = super().to_doc()
        doc["role"] = self.role.value
        # Only students carry a route number
        if self.role is not Role.STUDENT:
            doc.pop("routeNumber", None)
        return doc


class Route(Document):
    id: str
    route_number: str = Field(..., alias="routeNumber")


class Bus(Document):
    id: str
    bus_number: str = Field(..., alias="busNumber")
    route_number: Optional[str] = Field(None, alias="routeNumber")
    driver_id: Optional[str] = Field(None, alias="driverId")
    is_trip_active: bool = Field(False, alias="isTripActive")
    location: Optional[Location] = None


def new_bus_doc(bus_number: str) -> Dict[str, Any]:
    return {
        "busNumber": bus_number,
        "routeNumber": None,
        "driverId": None,
        "isTripActive": False,
        "location": None,
    }
