from pathlib import Path

import pytest
from conftest import count_rows

from bizledger.domain.errors import NotFoundError, TransactionError, ValidationError
from bizledger.repositories.sqlite_repo import SqliteRepository
from bizledger.services.billing_service import BillingService
from bizledger.services.client_service import ClientService
from bizledger.services.inventory_service import InventoryService


class FailingRepo(SqliteRepository):
    def _insert_bill_ledger_entry(self, cur, bill_id, client_id, amount, bill_date, now):
        raise RuntimeError("boom")


def _seed(repo):
    client_id = ClientService(repo).add_client("Ana", "555-0101")
    rice = InventoryService(repo).add_product("Rice", 1.0, 2.0, stock=50)
    beans = InventoryService(repo).add_product("Beans", 1.0, 5.0, stock=20)
    return client_id, rice, beans


def test_bill_creates_items_stock_and_one_ledger_entry(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "b.db")
    repo.init_db()
    client_id, rice, beans = _seed(repo)
    billing = BillingService(repo)

    bill_id = billing.create_bill(
        client_id,
        [
            {"product_id": rice, "quantity": 10, "price": 2.0},
            {"product_id": beans, "quantity": 3, "price": 5.5},
        ],
        date_iso="2024-05-01 10:00:00",
    )

    bill = repo.get_bill_by_id(bill_id)
    assert bill.total_amount == pytest.approx(36.5)
    assert len(repo.get_bill_items(bill_id)) == 2
    assert repo.get_stock(rice) == 40.0
    assert repo.get_stock(beans) == 17.0

    entries = repo.ledger_entries_for_bill(bill_id)
    assert len(entries) == 1
    assert entries[0].type == "bill"
    assert entries[0].amount == pytest.approx(36.5)
    assert entries[0].note == f"Bill #{bill_id}"


def test_bill_rolls_back_when_ledger_insert_fails(tmp_path: Path):
    repo = FailingRepo(tmp_path / "f.db")
    repo.init_db()
    client_id, rice, _ = _seed(repo)

    with pytest.raises(TransactionError, match="rolled back"):
        BillingService(repo).create_bill(client_id, [{"product_id": rice, "quantity": 5, "price": 2.0}])

    assert count_rows(repo, "bills") == 0
    assert count_rows(repo, "bill_items") == 0
    assert count_rows(repo, "ledger") == 0
    assert repo.get_stock(rice) == 50.0
    assert repo.get_product_by_id(rice).stock == 50.0


def test_overselling_floors_stock_at_zero(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "o.db")
    repo.init_db()
    client_id, _, beans = _seed(repo)

    BillingService(repo).create_bill(client_id, [{"product_id": beans, "quantity": 25, "price": 5.0}])

    assert repo.get_stock(beans) == 0.0
    assert repo.get_product_by_id(beans).stock == 0.0


def test_bill_validation(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "v.db")
    repo.init_db()
    client_id, rice, _ = _seed(repo)
    billing = BillingService(repo)

    with pytest.raises(ValidationError, match="no items"):
        billing.create_bill(client_id, [])
    with pytest.raises(ValidationError):
        billing.create_bill(client_id, [{"product_id": rice, "quantity": 0, "price": 2.0}])
    with pytest.raises(NotFoundError):
        billing.create_bill(999, [{"product_id": rice, "quantity": 1, "price": 2.0}])
    with pytest.raises(NotFoundError):
        billing.create_bill(client_id, [{"product_id": 999, "quantity": 1, "price": 2.0}])
    assert count_rows(repo, "bills") == 0


def test_update_bill_replaces_items_and_mirrors_ledger(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "u.db")
    repo.init_db()
    client_id, rice, beans = _seed(repo)
    billing = BillingService(repo)
    bill_id = billing.create_bill(client_id, [{"product_id": rice, "quantity": 10, "price": 2.0}])

    total = billing.update_bill(bill_id, [{"product_id": beans, "quantity": 2, "price": 5.0}], paid_amount=4.0)

    assert total == 10.0
    items = repo.get_bill_items(bill_id)
    assert [(i.product_id, i.quantity) for i in items] == [(beans, 2.0)]
    assert repo.get_bill_by_id(bill_id).paid_amount == 4.0
    entries = repo.ledger_entries_for_bill(bill_id)
    assert [e.amount for e in entries] == [10.0]
    # Replacement lines do not move stock.
    assert repo.get_stock(rice) == 40.0
    assert repo.get_stock(beans) == 20.0


def test_delete_bill_restores_stock_and_ledger(tmp_path: Path):
    repo = SqliteRepository(tmp_path / "d.db")
    repo.init_db()
    client_id, rice, _ = _seed(repo)
    billing = BillingService(repo)
    bill_id = billing.create_bill(client_id, [{"product_id": rice, "quantity": 10, "price": 2.0}])

    billing.delete_bill(bill_id)

    assert repo.get_stock(rice) == 50.0
    assert repo.get_bill_by_id(bill_id) is None
    assert repo.ledger_entries_for_bill(bill_id) == []
    assert count_rows(repo, "bill_items", live_only=True) == 0
    assert count_rows(repo, "ledger", live_only=True) == 0
    # The rows stay behind as deletions waiting to be synced.
    assert count_rows(repo, "bills") == 1
    assert count_rows(repo, "bill_items") == 1
    with pytest.raises(NotFoundError):
        billing.delete_bill(bill_id)
