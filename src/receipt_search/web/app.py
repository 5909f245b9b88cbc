"""
Django application initialization.
"""

import os
from pathlib import Path


def _export_settings(config_path=None, state_db_path=None) -> None:
    # os.environ requires strings, so convert Path objects
    if config_path:
        os.environ["RECEIPT_SEARCH_CONFIG"] = str(config_path)
    if state_db_path:
        os.environ["STATE_DB_PATH"] = str(state_db_path)
    elif config_path:
        from ..config import load_config

        config = load_config(Path(config_path))
        os.environ.setdefault("STATE_DB_PATH", str(config.state_db_path))


def get_wsgi_application(config_path=None, state_db_path=None):
    """
    Get the Django WSGI application configured with our settings.

    Args:
        config_path: Path to config.yaml (optional)
        state_db_path: Path to the state database (optional, overrides config)
    """
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "receipt_search.web.settings")
    _export_settings(config_path, state_db_path)

    from django.core.wsgi import get_wsgi_application as django_wsgi

    return django_wsgi()


def run_server(
    host: str = "127.0.0.1",
    port: int = 8080,
    config_path=None,
    state_db_path=None,
):
    """
    Run the Django development server.

    Args:
        host: Host to bind to
        port: Port to listen on
        config_path: Path to config.yaml
        state_db_path: Path to the state database (overrides config)
    """
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "receipt_search.web.settings")
    _export_settings(config_path, state_db_path)

    import django

    django.setup()

    from django.core.management import execute_from_command_line

    print(f"\n🌐 Precision search API at http://{host}:{port}/api/precision-search/")
    print(f"💾 State DB: {os.environ.get('STATE_DB_PATH', 'data/receipts.db')}")
    print("\nPress Ctrl+C to stop.\n")

    execute_from_command_line(
        [
            "manage.py",
            "runserver",
            f"{host}:{port}",
            "--noreload",
        ]
    )
