from __future__ import annotations

from sqlalchemy.orm import Session

from showroom.core.errors import NotFoundError
from showroom.crm.models import Car, Client, Note, Opportunity, Principal
from showroom.platform.security.ownership import owned_through, register_ownership, unscoped
from showroom.platform.security.repository import BaseRepository


register_ownership(Client, lambda principal_id: Client.owner_id == principal_id)
register_ownership(Opportunity, owned_through(Opportunity.client_id, Client))
register_ownership(Note, owned_through(Note.opportunity_id, Opportunity))
register_ownership(Car, unscoped)


class ClientRepository(BaseRepository[Client]):
    model = Client
    resource = "crm.client"
    label = "client"


class OpportunityRepository(BaseRepository[Opportunity]):
    model = Opportunity
    resource = "crm.opportunity"
    label = "opportunity"


class NoteRepository(BaseRepository[Note]):
    model = Note
    resource = "crm.note"
    label = "note"


class CarRepository(BaseRepository[Car]):
    model = Car
    resource = "crm.car"
    label = "car"

    def get(self, session: Session, car_id: int) -> Car:
        car = session.get(Car, car_id)
        if car is None:
            raise NotFoundError("car not found")
        return car


class PrincipalRepository:
    def ensure(self, session: Session, principal_id: str) -> Principal:
        principal = session.get(Principal, principal_id)
        if principal is None:
            principal = Principal(id=principal_id)
            session.add(principal)
            session.flush()
        return principal
