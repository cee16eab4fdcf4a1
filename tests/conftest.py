import pytest


@pytest.fixture(autouse=True)
def git_identity(monkeypatch: pytest.MonkeyPatch) -> None:
    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{prefix}_NAME", "Test User")
        monkeypatch.setenv(f"{prefix}_EMAIL", "test@example.com")
    monkeypatch.delenv("FOUNDRY_CONFIG", raising=False)
    monkeypatch.delenv("FOUNDRY_DATA_DIR", raising=False)
