from pathlib import Path

import pytest
from conftest import make_repo

from bizledger.domain.errors import NotFoundError, ValidationError
from bizledger.services.billing_service import BillingService
from bizledger.services.ledger_service import LedgerService


def test_sell_then_reduce_item_returns_difference_to_stock(tmp_path: Path):
    repo = make_repo(tmp_path)
    client_id = repo.add_client("Ana", None, None)
    pid = repo.add_product("Rice", 1.0, 3.0, stock=100)
    billing = BillingService(repo)

    bill_id = billing.create_bill(client_id, [{"product_id": pid, "quantity": 10, "price": 3.0}])
    assert repo.get_stock(pid) == 90.0

    item = repo.get_bill_items(bill_id)[0]
    total = billing.adjust_item_quantity(item.id, 4)

    assert repo.get_stock(pid) == 96.0
    assert repo.get_product_by_id(pid).stock == 96.0
    assert total == pytest.approx(12.0)
    assert repo.get_bill_by_id(bill_id).total_amount == pytest.approx(12.0)
    assert [e.amount for e in repo.ledger_entries_for_bill(bill_id)] == [pytest.approx(12.0)]


def test_total_is_exact_sum_over_all_items(tmp_path: Path):
    repo = make_repo(tmp_path)
    client_id = repo.add_client("Ana", None, None)
    rice = repo.add_product("Rice", 1.0, 3.0, stock=100)
    oil = repo.add_product("Oil", 1.0, 7.0, stock=100)
    billing = BillingService(repo)

    bill_id = billing.create_bill(
        client_id,
        [
            {"product_id": rice, "quantity": 2, "price": 3.0},
            {"product_id": oil, "quantity": 1, "price": 7.0},
        ],
    )
    oil_item = [i for i in repo.get_bill_items(bill_id) if i.product_id == oil][0]
    billing.adjust_item_quantity(oil_item.id, 3)

    items = repo.get_bill_items(bill_id)
    assert repo.get_bill_by_id(bill_id).total_amount == pytest.approx(sum(i.line_total for i in items))
    assert repo.get_stock(oil) == 97.0
    assert LedgerService(repo).balance(client_id) == pytest.approx(27.0)


def test_increase_beyond_stock_floors_at_zero(tmp_path: Path):
    repo = make_repo(tmp_path)
    client_id = repo.add_client("Ana", None, None)
    pid = repo.add_product("Rice", 1.0, 3.0, stock=5)
    bill_id = BillingService(repo).create_bill(client_id, [{"product_id": pid, "quantity": 2, "price": 3.0}])

    item = repo.get_bill_items(bill_id)[0]
    repo.adjust_single_bill_item(item.id, 20)

    assert repo.get_stock(pid) == 0.0
    assert repo.get_bill_by_id(bill_id).total_amount == pytest.approx(60.0)


def test_non_positive_quantity_is_rejected(tmp_path: Path):
    repo = make_repo(tmp_path)
    client_id = repo.add_client("Ana", None, None)
    pid = repo.add_product("Rice", 1.0, 3.0, stock=10)
    bill_id = BillingService(repo).create_bill(client_id, [{"product_id": pid, "quantity": 2, "price": 3.0}])
    item = repo.get_bill_items(bill_id)[0]

    with pytest.raises(ValidationError):
        repo.adjust_single_bill_item(item.id, 0)
    with pytest.raises(ValidationError):
        BillingService(repo).adjust_item_quantity(item.id, -1)
    with pytest.raises(NotFoundError):
        repo.adjust_single_bill_item(12345, 1)

    assert repo.get_stock(pid) == 8.0
    assert repo.get_bill_items(bill_id)[0].quantity == 2.0
