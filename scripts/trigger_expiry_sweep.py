"""Call the cancel-expired endpoint, once or on a fixed interval.

Meant for a cron host or sidecar that only has network access to the API.
Authenticates with ``SYSTEM_API_TOKEN``.
"""

import argparse
import logging
import time

import requests

from pharmacy_portal.config import get_settings
from pharmacy_portal.logging_config import configure_logging

logger = logging.getLogger("trigger_expiry_sweep")

REQUEST_TIMEOUT_SECONDS = 30


def trigger_sweep(session: requests.Session, base_url: str, token: str, dry_run: bool = False) -> dict:
    response = session.post(
        f"{base_url.rstrip('/')}/admin/orders/cancel-expired",
        json={"dryRun": dry_run},
        headers={"Authorization": f"Bearer {token}"},
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    if response.status_code == 429:
        logger.warning("Rate limited; retry after %s seconds", response.headers.get("Retry-After"))
        return {}
    response.raise_for_status()
    body = response.json()
    logger.info("Expiry sweep response: %s", body)
    return body


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--loop", action="store_true", help="Keep running every EXPIRY_SWEEP_INTERVAL_MINUTES")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    if not settings.SYSTEM_API_TOKEN:
        raise SystemExit("SYSTEM_API_TOKEN must be set")

    interval = settings.EXPIRY_SWEEP_INTERVAL_MINUTES * 60
    with requests.Session() as session:
        while True:
            try:
                trigger_sweep(session, settings.API_BASE_URL, settings.SYSTEM_API_TOKEN, args.dry_run)
            except requests.RequestException:
                if not args.loop:
                    raise
                logger.exception("Expiry sweep request failed")
            if not args.loop:
                break
            time.sleep(interval)


if __name__ == "__main__":
    main()
