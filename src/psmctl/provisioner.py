"""Cheapest-first spot instance provisioning with candidate fallback."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .errors import CloudError, ProvisioningExhaustedError
from .providers.ec2 import SecurityGroup, SpotPrice
from .state.models import Server, ServerStatus, ServiceTier

LOGGER = logging.getLogger(__name__)


class CloudClient(Protocol):
    """Cloud operations the provisioner and orchestrator depend on."""

    def spot_prices(self, region: str, instance_types: Sequence[str]) -> list[SpotPrice]: ...

    def key_pair_names(self, region: str) -> list[str]: ...

    def security_groups(self, region: str) -> list[SecurityGroup]: ...

    def run_instance(
        self,
        region: str,
        zone: str,
        instance_type: str,
        key_names: Sequence[str],
        security_group_ids: Sequence[str],
    ) -> str: ...

    def instance_ip(self, region: str, instance_id: str) -> str: ...

    def terminate_instance(self, region: str, instance_id: str) -> None: ...


def order_offers(offers: Iterable[SpotPrice]) -> list[SpotPrice]:
    """Return *offers* cheapest first; ties keep their original order."""
    return sorted(offers, key=lambda offer: offer.price)


def matching_security_groups(groups: Iterable[SecurityGroup], tag: str) -> list[str]:
    """Return ids of groups whose name contains *tag* (case-insensitive)."""
    needle = tag.lower()
    return [group.group_id for group in groups if needle in group.name.lower()]


@dataclass
class Provisioner:
    """Create a spot instance at the cheapest viable region/zone/type."""

    cloud: CloudClient
    reference_region: str
    security_group_tag: str

    def collect_offers(self, regions: Sequence[str], tier: ServiceTier) -> list[SpotPrice]:
        """Query spot prices for *tier* in every region, cheapest first."""
        offers: list[SpotPrice] = []
        for region in regions:
            try:
                region_offers = self.cloud.spot_prices(region, tier.instance_types)
            except CloudError as exc:
                LOGGER.warning("Skipping region %s: %s", region, exc)
                continue
            LOGGER.debug("Region %s returned %d offer(s).", region, len(region_offers))
            offers.extend(region_offers)
        return order_offers(offers)

    def provision(self, name: str, regions: Sequence[str], tier: ServiceTier) -> Server:
        """Launch an instance for *name* and return its running record."""
        offers = self.collect_offers(regions, tier)
        if not offers:
            raise ProvisioningExhaustedError(
                f"No spot offers for tier {tier.value} in {', '.join(regions)}."
            )

        # Key pairs are looked up once, independent of the launch region.
        key_names = self.cloud.key_pair_names(self.reference_region)

        failures: list[str] = []
        for offer in offers:
            LOGGER.info(
                "[1] Trying %s in %s (%s) at %.4f/h",
                offer.instance_type,
                offer.zone,
                offer.region,
                offer.price,
            )
            try:
                groups = matching_security_groups(
                    self.cloud.security_groups(offer.region), self.security_group_tag
                )
                instance_id = self.cloud.run_instance(
                    offer.region, offer.zone, offer.instance_type, key_names, groups
                )
            except CloudError as exc:
                LOGGER.warning(
                    "[1] Failed to create %s in %s: %s", offer.instance_type, offer.zone, exc
                )
                failures.append(f"{offer.region}/{offer.zone}/{offer.instance_type}: {exc}")
                continue

            LOGGER.info(
                "[1] Created %s (%s in %s, %.4f/h)",
                instance_id,
                offer.instance_type,
                offer.zone,
                offer.price,
            )
            ip = self.cloud.instance_ip(offer.region, instance_id)
            LOGGER.info("[1] Instance %s reachable at %s", instance_id, ip)
            return Server(
                name=name,
                status=ServerStatus.RUNNING,
                service_instance_type=tier,
                save=None,
                ip=ip,
                region=offer.region,
                instance_id=instance_id,
            )

        raise ProvisioningExhaustedError(
            f"All {len(offers)} spot candidate(s) for tier {tier.value} failed: "
            + "; ".join(failures)
        )


__all__ = [
    "CloudClient",
    "Provisioner",
    "matching_security_groups",
    "order_offers",
]
