from sqlalchemy import text

from database import build_engine


def journal_mode(url: str) -> str:
    engine = build_engine(url)
    with engine.connect() as conn:
        mode = conn.execute(text("PRAGMA journal_mode")).scalar_one()
    engine.dispose()
    return mode.lower()


def test_file_databases_use_wal(tmp_path) -> None:
    assert journal_mode(f"sqlite:///{tmp_path / 'fintrack.db'}") == "wal"


def test_memory_databases_skip_wal() -> None:
    assert journal_mode("sqlite:///:memory:") == "memory"
