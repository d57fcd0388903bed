from __future__ import annotations

from typing import Optional

from bizledger.domain.errors import NotFoundError, ValidationError
from bizledger.domain.models import Client


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


class ClientService:
    def __init__(self, repo):
        self.repo = repo

    def list_clients(self) -> list[Client]:
        return self.repo.list_clients()

    def search(self, query: str) -> list[Client]:
        query = (query or "").strip()
        if not query:
            return self.repo.list_clients()
        return self.repo.search_clients(query)

    def get_client(self, client_id: int) -> Client:
        c = self.repo.get_client_by_id(int(client_id))
        if not c:
            raise NotFoundError("Client not found.")
        return c

    def add_client(self, name: str, phone: Optional[str] = None, address: Optional[str] = None) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Client name is required.")
        return self.repo.add_client(name, _clean(phone), _clean(address))

    def update_client(self, client_id: int, name: str, phone: Optional[str] = None, address: Optional[str] = None) -> None:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Client name is required.")
        updated = self.repo.update_client(int(client_id), name, _clean(phone), _clean(address))
        if not updated:
            raise NotFoundError("Client not found.")

    def delete_client(self, client_id: int) -> None:
        removed = self.repo.delete_client(int(client_id))
        if not removed:
            raise NotFoundError("Client not found.")
