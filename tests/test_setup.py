"""Test that the project setup is working correctly."""

import erc20_transfer_indexer


def test_version() -> None:
    """Test that version is defined."""
    assert erc20_transfer_indexer.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from erc20_transfer_indexer import api
    from erc20_transfer_indexer import config
    from erc20_transfer_indexer import ingestor
    from erc20_transfer_indexer import storage
    from erc20_transfer_indexer import supervisor

    # Just verify imports work
    assert api is not None
    assert config is not None
    assert ingestor is not None
    assert storage is not None
    assert supervisor is not None
