import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import boto3
from loguru import logger

from psm.errors import NoAvailableInstance, TransientProviderError


@dataclass(frozen=True)
class Quote:
    region: str
    zone: str
    instance_type: str
    hourly_price: float
    bandwidth_price: float = 0.0


def list_zones(region: str) -> list[str]:
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.describe_availability_zones(
        Filters=[{"Name": "state", "Values": ["available"]}],
    )
    return [z["ZoneName"] for z in response.get("AvailabilityZones", [])]


def query_spot_price(
    region: str, zone: str, instance_type: str, product_description: str = "Linux/UNIX",
) -> float:
    """Current spot price for one (zone, instance type); raises if the combo is not offered."""
    ec2 = boto3.client("ec2", region_name=region)
    response = ec2.describe_spot_price_history(
        InstanceTypes=[instance_type],
        AvailabilityZone=zone,
        ProductDescriptions=[product_description],
        StartTime=datetime.now(timezone.utc),
    )
    history = response.get("SpotPriceHistory", [])
    if not history:
        raise LookupError(f"{instance_type} is not offered in {zone}")
    latest = max(history, key=lambda h: h["Timestamp"])
    return float(latest["SpotPrice"])


async def find_cheapest(
    regions: list[str], instance_types: list[str],
    product_description: str = "Linux/UNIX", bandwidth_price: float = 0.0,
) -> Quote:
    """Query every (region, zone, instance type) concurrently and return the cheapest.

    Failed price queries are dropped; a failed zone listing fails the search.
    Ties go to the pair enumerated first (regions, then zones, then types).
    """
    try:
        zone_lists = await asyncio.gather(
            *(asyncio.to_thread(list_zones, region) for region in regions)
        )
    except Exception as e:
        raise TransientProviderError(f"Failed to list zones: {e}") from e

    pairs = [
        (region, zone, instance_type)
        for region, zones in zip(regions, zone_lists)
        for zone in zones
        for instance_type in instance_types
    ]
    logger.debug(f"Querying {len(pairs)} spot prices across {len(regions)} region(s)")
    results = await asyncio.gather(
        *(
            asyncio.to_thread(query_spot_price, region, zone, instance_type, product_description)
            for region, zone, instance_type in pairs
        ),
        return_exceptions=True,
    )

    quotes = []
    for (region, zone, instance_type), result in zip(pairs, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.debug(f"No price for {instance_type} in {zone}: {result}")
            continue
        quotes.append(Quote(
            region=region, zone=zone, instance_type=instance_type,
            hourly_price=result, bandwidth_price=bandwidth_price,
        ))

    if not quotes:
        raise NoAvailableInstance(instance_types, regions)
    # Stable sort keeps enumeration order among equal prices
    quotes.sort(key=lambda q: q.hourly_price)
    return quotes[0]
