#!/usr/bin/env python3
"""
Example usage of the trip engine.

Runs one sync cycle for the configured devices, refreshes their live state,
backfills incomplete trips, and logs a mileage summary and provider audit
per device.
"""

import logging
from datetime import UTC, datetime, timedelta

from fleet_trip_engine import Gps51Client, SyncOrchestrator, audit_device_trips

logger = logging.getLogger(__name__)


def main() -> None:
    """Run one full engine cycle."""
    with SyncOrchestrator.from_config('config/engine_config.yaml') as orchestrator:
        config = orchestrator.config

        summary = orchestrator.run_once()
        logger.info('Synced %d device(s), %d failed', summary.synced, summary.failed)

        orchestrator.refresh_live_states()

        report = orchestrator.reconciliation_sweep().run()
        logger.info('Reconciled %d of %d incomplete trip(s)', report.fixed, report.checked)

        now = datetime.now(UTC)
        client = orchestrator.source
        for device_id in config.devices:
            mileage = orchestrator.trip_repository.mileage_summary(device_id, now, 'UTC')
            logger.info(
                '%s: today %.1f km (%d trips), week %.1f km, month %.1f km',
                device_id,
                mileage.today_km,
                mileage.today_trips,
                mileage.week_km,
                mileage.month_km,
            )

            if isinstance(client, Gps51Client):
                audit = audit_device_trips(
                    client,
                    orchestrator.trip_repository,
                    device_id,
                    now - timedelta(days=1),
                    now,
                )
                logger.info(
                    '%s: %.0f%% of provider trips matched', device_id, audit.match_rate * 100
                )


if __name__ == '__main__':
    main()
