import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def make_repo(tmp_path: Path, name: str = "t.db"):
    from bizledger.repositories.sqlite_repo import SqliteRepository

    repo = SqliteRepository(tmp_path / name)
    repo.init_db()
    return repo


def count_rows(repo, table: str, live_only: bool = False) -> int:
    conn = repo._conn()
    cur = conn.cursor()
    where = " WHERE is_deleted = 0" if live_only else ""
    cur.execute(f"SELECT COUNT(*) FROM {table}{where}")
    n = int(cur.fetchone()[0])
    conn.close()
    return n
