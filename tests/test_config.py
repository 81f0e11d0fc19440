import logging

from context_allocator.config import Settings, configure_logging, get_settings


def test_defaults():
    settings = Settings()

    assert settings.budget.context_ratio == 0.7
    assert settings.budget.category_ratios == {"content": 0.4, "resource": 0.3, "document": 0.3}
    assert settings.search.locales == ["en"]
    assert settings.concurrency.retrieval == 5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("ALLOCATION_TIMEOUT", "2.5")
    monkeypatch.setenv("CHROMA_HOST", "chroma.internal")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings()

    assert settings.ALLOCATION_TIMEOUT == 2.5
    assert settings.CHROMA_HOST == "chroma.internal"
    assert settings.LOG_LEVEL == "debug"


def test_index_name_is_versioned():
    settings = Settings(COLLECTION_NAME="context_v1")

    assert settings.get_index_name() == "context_v1_all_MiniLM_L6_v2_2025-01-01"


def test_settings_are_cached():
    assert get_settings() is get_settings()


def test_configure_logging_sets_package_level():
    configure_logging("warning")

    assert logging.getLogger("context_allocator").level == logging.WARNING
    logging.getLogger("context_allocator").setLevel(logging.NOTSET)
