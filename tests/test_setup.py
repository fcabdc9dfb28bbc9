"""Test that the project setup is working correctly."""

import fingerprint_risk


def test_version() -> None:
    """Test that version is defined."""
    assert fingerprint_risk.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from fingerprint_risk import config, detector, ingestor, limiter, metrics, pipeline, storage

    # Just verify imports work
    assert config is not None
    assert detector is not None
    assert ingestor is not None
    assert limiter is not None
    assert metrics is not None
    assert pipeline is not None
    assert storage is not None
