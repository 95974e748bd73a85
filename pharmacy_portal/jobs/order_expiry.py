import argparse
import logging

from ..config import get_settings
from ..database import session_scope
from ..logging_config import configure_logging
from ..services.expiry_sweep import run_expiry_sweep

logger = logging.getLogger(__name__)


def cancel_expired_orders(dry_run: bool = False) -> dict:
    logger.info("Starting expired order sweep")
    with session_scope() as db:
        result = run_expiry_sweep(db, dry_run=dry_run)
    if not result.ok:
        logger.error("Expired order sweep failed (request %s)", result.request_id)
    elif dry_run:
        logger.info("Dry run found %s expired orders", result.found)
    else:
        logger.info(
            "Cancelled %s expired orders (%s skipped, %s failed)",
            result.cancelled,
            result.skipped,
            result.failed,
        )
    return result.to_response()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Cancel pharmacy orders whose acceptance window has passed")
    parser.add_argument("--dry-run", action="store_true", help="Report how many orders would be cancelled")
    args = parser.parse_args(argv)

    configure_logging(get_settings())
    response = cancel_expired_orders(dry_run=args.dry_run)
    return 1 if "error" in response else 0


if __name__ == "__main__":
    raise SystemExit(main())
