"""EC2 provider used to price, launch and terminate spot instances."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from ..config import CloudConfig
from ..errors import CloudError

LOGGER = logging.getLogger(__name__)

PRODUCT_DESCRIPTION = "Linux/UNIX"
# Spot price history is sparse; a short lookback still yields the current price per zone.
PRICE_LOOKBACK = timedelta(hours=6)


@dataclass(frozen=True)
class SpotPrice:
    """Current spot price of an instance type in one availability zone."""

    price: float
    region: str
    zone: str
    instance_type: str


@dataclass(frozen=True)
class SecurityGroup:
    """Minimal security group description."""

    group_id: str
    name: str


def _describe_error(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        message = error.get("Message", str(exc))
        return f"{code}: {message}"
    return str(exc)


@dataclass
class EC2Client:
    """Thin wrapper around boto3 EC2/SSM clients scoped per region."""

    config: CloudConfig
    _clients: dict[tuple[str, str], Any] = field(default_factory=dict, init=False, repr=False)
    _session: Any = field(default=None, init=False, repr=False)

    # ------------------------------------------------------------------
    def _client(self, service: str, region: str) -> Any:
        key = (service, region)
        client = self._clients.get(key)
        if client is None:
            if self._session is None:
                self._session = (
                    boto3.Session(profile_name=self.config.profile)
                    if self.config.profile
                    else boto3.Session()
                )
            client = self._session.client(service, region_name=region)
            self._clients[key] = client
        return client

    # ------------------------------------------------------------------
    def spot_prices(self, region: str, instance_types: Sequence[str]) -> list[SpotPrice]:
        """Return the latest spot price per (zone, instance type) in *region*."""
        ec2 = self._client("ec2", region)
        latest: dict[tuple[str, str], tuple[datetime, float]] = {}
        try:
            paginator = ec2.get_paginator("describe_spot_price_history")
            pages = paginator.paginate(
                InstanceTypes=list(instance_types),
                ProductDescriptions=[PRODUCT_DESCRIPTION],
                StartTime=datetime.now(tz=UTC) - PRICE_LOOKBACK,
            )
            for page in pages:
                for item in page.get("SpotPriceHistory", []):
                    key = (item["AvailabilityZone"], item["InstanceType"])
                    stamp = item["Timestamp"]
                    price = float(item["SpotPrice"])
                    current = latest.get(key)
                    if current is None or stamp > current[0]:
                        latest[key] = (stamp, price)
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(f"Spot price query failed in {region}: {_describe_error(exc)}") from exc

        return [
            SpotPrice(price=price, region=region, zone=zone, instance_type=instance_type)
            for (zone, instance_type), (_, price) in latest.items()
        ]

    def key_pair_names(self, region: str) -> list[str]:
        """Return the key pair names registered in *region*."""
        ec2 = self._client("ec2", region)
        try:
            response = ec2.describe_key_pairs()
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(f"Key pair lookup failed in {region}: {_describe_error(exc)}") from exc
        return [pair["KeyName"] for pair in response.get("KeyPairs", []) if pair.get("KeyName")]

    def security_groups(self, region: str) -> list[SecurityGroup]:
        """Return the security groups visible in *region*."""
        ec2 = self._client("ec2", region)
        groups: list[SecurityGroup] = []
        try:
            paginator = ec2.get_paginator("describe_security_groups")
            for page in paginator.paginate():
                for group in page.get("SecurityGroups", []):
                    groups.append(
                        SecurityGroup(group_id=group["GroupId"], name=group.get("GroupName", ""))
                    )
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(
                f"Security group lookup failed in {region}: {_describe_error(exc)}"
            ) from exc
        return groups

    def image_id(self, region: str) -> str:
        """Return the AMI to launch in *region*."""
        pinned = self.config.image_for(region)
        if pinned:
            return pinned
        if not self.config.image_parameter:
            raise CloudError(f"No image configured for region {region}.")
        ssm = self._client("ssm", region)
        try:
            response = ssm.get_parameter(Name=self.config.image_parameter)
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(
                f"Image lookup ({self.config.image_parameter}) failed in {region}: "
                f"{_describe_error(exc)}"
            ) from exc
        return str(response["Parameter"]["Value"])

    def run_instance(
        self,
        region: str,
        zone: str,
        instance_type: str,
        key_names: Sequence[str],
        security_group_ids: Sequence[str],
    ) -> str:
        """Launch a one-time spot instance and return its identifier."""
        ec2 = self._client("ec2", region)
        spot_options: dict[str, object] = {"SpotInstanceType": "one-time"}
        if self.config.max_spot_price:
            spot_options["MaxPrice"] = self.config.max_spot_price
        launch_spec: dict[str, object] = {
            "ImageId": self.image_id(region),
            "InstanceType": instance_type,
            "Placement": {"AvailabilityZone": zone},
            "InstanceMarketOptions": {"MarketType": "spot", "SpotOptions": spot_options},
            "MinCount": 1,
            "MaxCount": 1,
        }
        if key_names:
            # EC2 accepts a single key pair per launch.
            launch_spec["KeyName"] = key_names[0]
            if len(key_names) > 1:
                LOGGER.debug("Using key pair %s; ignoring %s.", key_names[0], key_names[1:])
        if security_group_ids:
            launch_spec["SecurityGroupIds"] = list(security_group_ids)
        try:
            response = ec2.run_instances(**launch_spec)
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(
                f"Launch of {instance_type} in {zone} failed: {_describe_error(exc)}"
            ) from exc
        instances = response.get("Instances", [])
        if not instances:
            raise CloudError(f"Launch of {instance_type} in {zone} returned no instance.")
        return str(instances[0]["InstanceId"])

    def instance_ip(self, region: str, instance_id: str) -> str:
        """Wait for *instance_id* to run and return its public IPv4 address."""
        ec2 = self._client("ec2", region)
        try:
            ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
            response = ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError, WaiterError) as exc:
            raise CloudError(
                f"Unable to resolve address of {instance_id} in {region}: {_describe_error(exc)}"
            ) from exc
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                address = instance.get("PublicIpAddress")
                if address:
                    return str(address)
        raise CloudError(f"Instance {instance_id} in {region} has no public IP address.")

    def terminate_instance(self, region: str, instance_id: str) -> None:
        """Terminate *instance_id* in *region*."""
        ec2 = self._client("ec2", region)
        try:
            ec2.terminate_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as exc:
            raise CloudError(
                f"Termination of {instance_id} in {region} failed: {_describe_error(exc)}"
            ) from exc
        LOGGER.info("Termination requested for %s in %s.", instance_id, region)


__all__ = ["EC2Client", "SecurityGroup", "SpotPrice"]
