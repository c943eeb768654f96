#!/usr/bin/env python3
"""
Example usage of the Automated Pavilion Reservation system
"""

import asyncio
import json
from Automated_Pavilion_Reservation import (
    ExpoTicketClient,
    ReservationConfig,
    ReservationController,
    ReservationLogger,
)

async def main():
    """Example of reserving a single event with an explicit configuration"""

    # Load configuration from file
    with open('config.json', 'r') as f:
        config_data = json.load(f)

    config = ReservationConfig.from_dict(config_data)
    target = config.targets()[0]

    print("Pavilion Reservation")
    print("=" * 40)
    print(f"Event: {target.event_code}")
    print(f"Entrance date: {config.entrance_date}")
    print(f"Window: {config.reservation_window_hours:g} hours")
    print(f"Retry delay: {config.retry_delay_seconds:g}s")

    logger = ReservationLogger(log_file=config.log_file)

    async with ExpoTicketClient(config) as client:
        controller = ReservationController(target, config, client, logger)

        try:
            outcome = await controller.run()
            print(f"\nReserved {controller.label} at {controller.chosen_slot}: {outcome.kind.value}")
            print(f"Attempts: {controller.attempts}, retries: {controller.retry.retries}")
        except Exception as e:
            print(f"Error: {e}")

if __name__ == "__main__":
    asyncio.run(main())
