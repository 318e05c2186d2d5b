"""Package metadata tests."""

from pathlib import Path


def test_version_is_available() -> None:
    from fastapi_rentalship import __version__

    assert __version__ == "0.1.0"


def test_py_typed_marker_exists() -> None:
    marker = (
        Path(__file__).resolve().parents[1]
        / "src"
        / "fastapi_rentalship"
        / "py.typed"
    )
    assert marker.exists(), "py.typed marker file must exist"


def test_all_exports_importable() -> None:
    import fastapi_rentalship

    expected = {
        "LabelOrchestrator",
        "NotificationDispatcher",
        "ProtectedDataReconciler",
        "RentalShipConfig",
        "TrackingWebhookHandler",
        "TransactionNotFoundError",
        "TransactionStore",
        "__version__",
        "create_fulfillment_router",
        "pick_link",
        "register_exception_handlers",
    }
    assert set(fastapi_rentalship.__all__) == expected

    for name in expected:
        obj = getattr(fastapi_rentalship, name)
        assert obj is not None, f"{name} resolved to None"


def test_getattr_raises_for_unknown_attribute() -> None:
    import pytest

    import fastapi_rentalship

    with pytest.raises(AttributeError, match="no_such_thing"):
        fastapi_rentalship.no_such_thing  # noqa: B018
