import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

from sqlalchemy import inspect  # noqa: E402

from tally.core import database as db  # noqa: E402
from tally.core.models import ImportRecord, Meta  # noqa: E402
from tally.core.seed import SCHEMA_VERSION, ensure_seed  # noqa: E402


def test_ensure_seed_creates_schema(tmp_path):
    db_path = tmp_path / "data" / "tally.db"
    ensure_seed(str(db_path))
    try:
        with db.SessionLocal() as session:
            assert SCHEMA_VERSION == 1
            assert session.get(Meta, "schema_version").value == "1"
            assert session.query(ImportRecord).count() == 0
            tables = set(inspect(session.get_bind()).get_table_names())
            assert {"imports", "expenses", "incomes", "import_duplicates"} <= tables
            assert "portfolio_import_files" in tables
    finally:
        db.dispose_engine()


def test_ensure_seed_is_idempotent(tmp_path):
    db_path = tmp_path / "tally.db"
    ensure_seed(str(db_path))
    try:
        with db.SessionLocal() as session:
            session.add(
                ImportRecord(
                    filename="kept.csv",
                    row_count_total=1,
                    row_count_inserted=1,
                    row_count_duplicates=0,
                    status="succeeded",
                    kind="income",
                )
            )
            session.commit()
    finally:
        db.dispose_engine()

    ensure_seed(str(db_path))
    try:
        with db.SessionLocal() as session:
            record = session.query(ImportRecord).one()
            assert record.filename == "kept.csv"
            assert record.kind == "income"
            assert session.query(Meta).count() == 1
    finally:
        db.dispose_engine()
