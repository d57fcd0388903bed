import sqlite3
from datetime import date
from pathlib import Path

import pytest
from conftest import make_repo

from bizledger.domain.errors import BatchClosedError, NotFoundError
from bizledger.services.demand_service import DemandService


def _seed(repo):
    ana = repo.add_client("Ana", None, None)
    bob = repo.add_client("Bob", None, None)
    a = repo.add_product("A", 1.0, 1.0, stock=0)
    b = repo.add_product("B", 1.0, 1.0, stock=3)
    return ana, bob, a, b


def test_close_batch_commits_totals_to_stock(tmp_path: Path):
    repo = make_repo(tmp_path)
    ana, bob, a, b = _seed(repo)
    demand = DemandService(repo)
    batch = demand.open_batch(date(2024, 5, 1))

    demand.add_demand(batch.id, ana, a, 10)
    demand.add_demand(batch.id, bob, a, 5)
    demand.add_demand(batch.id, bob, b, 7)

    totals = {t.product_name: t.total_qty for t in demand.totals(batch.id)}
    assert totals == {"A": 15.0, "B": 7.0}

    next_id = demand.close_batch(batch.id)

    assert repo.get_stock(a) == 15.0
    assert repo.get_stock(b) == 10.0
    assert repo.get_product_by_id(b).stock == 10.0
    assert demand.get_batch(batch.id).closed is True

    nxt = demand.get_batch(next_id)
    assert nxt.demand_date == "2024-05-02"
    assert nxt.closed is False


def test_closed_batch_is_immutable(tmp_path: Path):
    repo = make_repo(tmp_path)
    ana, _, a, _ = _seed(repo)
    demand = DemandService(repo)
    batch = demand.open_batch(date(2024, 5, 1))
    entry_id = demand.add_demand(batch.id, ana, a, 2)
    demand.close_batch(batch.id, create_next_period=False)

    with pytest.raises(BatchClosedError):
        demand.add_demand(batch.id, ana, a, 1)
    with pytest.raises(BatchClosedError):
        demand.update_demand(entry_id, 9)
    with pytest.raises(BatchClosedError):
        demand.remove_demand(entry_id)
    with pytest.raises(BatchClosedError):
        demand.close_batch(batch.id)

    # Second close did not add stock again.
    assert repo.get_stock(a) == 2.0


def test_one_open_batch_per_date(tmp_path: Path):
    repo = make_repo(tmp_path)

    first = repo.get_or_create_batch_for_date("2024-05-01")
    second = repo.get_or_create_batch_for_date("2024-05-01")
    assert first == second

    conn = repo._conn()
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO demand_batch (demand_date, closed) VALUES ('2024-05-01', 0)")
    conn.close()


def test_closing_allows_new_open_batch_for_same_date(tmp_path: Path):
    repo = make_repo(tmp_path)
    first = repo.get_or_create_batch_for_date("2024-05-01")
    repo.close_demand_batch(first)

    again = repo.get_or_create_batch_for_date("2024-05-01")
    assert again != first


def test_close_with_explicit_next_date_reuses_open_batch(tmp_path: Path):
    repo = make_repo(tmp_path)
    existing = repo.get_or_create_batch_for_date("2024-06-10")
    batch = repo.get_or_create_batch_for_date("2024-06-01")

    next_id = repo.close_demand_batch(batch, create_next_period=True, next_date="2024-06-10")

    assert next_id == existing


def test_client_breakdown_and_missing_batch(tmp_path: Path):
    repo = make_repo(tmp_path)
    ana, bob, a, b = _seed(repo)
    demand = DemandService(repo)
    batch = demand.open_batch(date(2024, 5, 1))
    demand.add_demand(batch.id, ana, a, 1)
    demand.add_demand(batch.id, ana, a, 2)
    demand.add_demand(batch.id, bob, b, 4)

    lines = [(l.client_name, l.product_name, l.qty) for l in demand.client_breakdown(batch.id)]
    assert lines == [("Ana", "A", 3.0), ("Bob", "B", 4.0)]

    with pytest.raises(NotFoundError):
        repo.close_demand_batch(999)
    with pytest.raises(NotFoundError):
        repo.insert_demand_entry(999, ana, a, 1)
