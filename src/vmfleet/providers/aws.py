"""Amazon Web Services (AWS) compute provider.

Uses the boto3 SDK to launch, describe and control EC2 instances.
Blocking SDK calls run in a worker thread via ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from datetime import UTC, datetime
from typing import Any

from vmfleet.exceptions import (
    InstanceNotFoundError,
    ProviderAuthError,
    ProviderError,
    ProviderThrottledError,
    ProviderUnavailableError,
    ProviderUnknownError,
)
from vmfleet.providers.base import (
    ActionResult,
    InstanceDetails,
    InstanceHealth,
    LaunchResult,
    LaunchSpec,
)
from vmfleet.providers.cloud_base import CloudProvider
from vmfleet.servers.status import ServerStatus

try:
    import boto3  # pragma: no cover
    from botocore.exceptions import (  # pragma: no cover
        BotoCoreError,
        ClientError,
        NoCredentialsError,
        PartialCredentialsError,
    )

    _HAS_BOTO3 = True  # pragma: no cover
except ImportError:
    _HAS_BOTO3 = False

logger = logging.getLogger(__name__)

# EC2 instance state name -> server status
_STATE_MAP: dict[str, ServerStatus] = {
    "pending": ServerStatus.PENDING,
    "running": ServerStatus.RUNNING,
    "stopping": ServerStatus.STOPPING,
    "stopped": ServerStatus.STOPPED,
    "shutting-down": ServerStatus.TERMINATING,
    "terminated": ServerStatus.TERMINATED,
}

_NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})
_THROTTLE_CODES = frozenset({"RequestLimitExceeded", "Throttling", "ThrottlingException"})
_AUTH_CODES = frozenset(
    {
        "AuthFailure",
        "UnauthorizedOperation",
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "ExpiredToken",
    }
)
_UNAVAILABLE_CODES = frozenset({"ServiceUnavailable", "InternalError", "Unavailable"})

MANAGED_BY = "vmfleet"


def _map_state(name: str) -> ServerStatus:
    status = _STATE_MAP.get(name)
    if status is None:
        raise ProviderUnknownError(
            f"Unrecognised EC2 instance state '{name}'",
            details={"state": name},
        )
    return status


def _translate_error(
    exc: Exception,
    operation: str,
    instance_id: str | None = None,
) -> ProviderError:
    """Convert a botocore exception into the provider error taxonomy."""
    details: dict[str, Any] = {"provider": "aws", "operation": operation}
    if instance_id:
        details["instance_id"] = instance_id

    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        message = str(exc.response.get("Error", {}).get("Message", "")) or str(exc)
        details["code"] = code
        if code in _NOT_FOUND_CODES:
            return InstanceNotFoundError(message, details=details)
        if code in _THROTTLE_CODES:
            return ProviderThrottledError(message, details=details)
        if code in _AUTH_CODES:
            return ProviderAuthError(message, details=details)
        if code in _UNAVAILABLE_CODES:
            return ProviderUnavailableError(message, details=details)
        return ProviderUnknownError(f"{operation} failed: {message}", details=details)

    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return ProviderAuthError(f"{operation} failed: {exc}", details=details)

    # Remaining BotoCoreError cases are endpoint and connection failures.
    return ProviderUnavailableError(f"{operation} failed: {exc}", details=details)


class AWSProvider(CloudProvider):
    """AWS EC2 compute provider.

    Parameters
    ----------
    access_key_id:
        AWS access key ID for authentication.
    secret_access_key:
        AWS secret access key for authentication.
    session_token:
        Optional STS session token.
    region:
        AWS region for compute resources (default ``us-east-1``).
    ami_id:
        Amazon Machine Image ID used to launch instances.
    key_name:
        EC2 key-pair name for SSH access to instances.
    security_group_id:
        Security group ID attached to launched instances.
    subnet_id:
        Optional VPC subnet ID for the launched instances.
    detailed_monitoring:
        Enable CloudWatch detailed monitoring on launch.
    """

    def __init__(
        self,
        *,
        access_key_id: str,
        secret_access_key: str,
        session_token: str = "",
        region: str = "us-east-1",
        ami_id: str,
        key_name: str = "",
        security_group_id: str = "",
        subnet_id: str = "",
        detailed_monitoring: bool = True,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        super().__init__(
            timeout_seconds=timeout_seconds,
            retry_attempts=retry_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )
        if not _HAS_BOTO3:
            raise RuntimeError(
                "boto3 is required for the AWS provider. Install it with:  pip install boto3"
            )
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._session_token = session_token
        self._region = region
        self._ami_id = ami_id
        self._key_name = key_name
        self._security_group_id = security_group_id
        self._subnet_id = subnet_id
        self._detailed_monitoring = detailed_monitoring

        # SDK client - initialised in _connect()
        self._ec2: Any = None

    # ------------------------------------------------------------------
    # Property
    # ------------------------------------------------------------------

    @property
    def provider_name(self) -> str:
        return "aws"

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        """Create the boto3 EC2 client."""

        def _create_client() -> Any:
            session = boto3.Session(
                aws_access_key_id=self._access_key_id or None,
                aws_secret_access_key=self._secret_access_key or None,
                aws_session_token=self._session_token or None,
                region_name=self._region,
            )
            return session.client("ec2")

        self._ec2 = await asyncio.to_thread(_create_client)
        logger.info("[aws] Connected to AWS in region %s", self._region)

    async def _disconnect(self) -> None:
        """Release SDK client."""
        self._ec2 = None
        logger.info("[aws] Disconnected from AWS")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def _create(self, spec: LaunchSpec) -> LaunchResult:
        """Launch one EC2 instance.

        The server id is passed as ``ClientToken`` so a retried or
        duplicated request returns the original instance instead of
        launching a second one.
        """
        user_data_b64 = base64.b64encode(spec.bootstrap_payload).decode()
        tags = self._build_tags(spec)

        def _launch() -> dict[str, Any]:
            run_kwargs: dict[str, Any] = {
                "ImageId": self._ami_id,
                "InstanceType": spec.instance_type,
                "MinCount": 1,
                "MaxCount": 1,
                "UserData": user_data_b64,
                "ClientToken": spec.server_id,
                "TagSpecifications": [
                    {
                        "ResourceType": "instance",
                        "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
                    }
                ],
                "Monitoring": {"Enabled": self._detailed_monitoring},
            }
            if self._key_name:
                run_kwargs["KeyName"] = self._key_name
            if self._security_group_id:
                run_kwargs["SecurityGroupIds"] = [self._security_group_id]
            if self._subnet_id:
                run_kwargs["SubnetId"] = self._subnet_id

            response = self._ec2.run_instances(**run_kwargs)
            return dict(response["Instances"][0])

        try:
            instance = await asyncio.to_thread(_launch)
        except (BotoCoreError, ClientError) as exc:
            raise _translate_error(exc, "create") from exc

        return LaunchResult(
            provider_instance_id=instance["InstanceId"],
            status=_map_state(instance.get("State", {}).get("Name", "pending")),
            private_address=instance.get("PrivateIpAddress"),
        )

    @staticmethod
    def _build_tags(spec: LaunchSpec) -> dict[str, str]:
        tags = {
            "Name": f"{MANAGED_BY}-{spec.plan_type}-{spec.owner_id[:8]}",
            "ManagedBy": MANAGED_BY,
            "OwnerId": spec.owner_id,
            "ServerId": spec.server_id,
            "Plan": spec.plan_type,
            "CreatedAt": datetime.now(UTC).isoformat(),
        }
        tags.update(spec.tags)
        return tags

    # ------------------------------------------------------------------
    # Describe
    # ------------------------------------------------------------------

    async def _describe(self, provider_instance_id: str) -> InstanceDetails:
        def _fetch() -> dict[str, Any] | None:
            resp = self._ec2.describe_instances(InstanceIds=[provider_instance_id])
            for reservation in resp.get("Reservations", []):
                for inst in reservation.get("Instances", []):
                    return dict(inst)
            return None

        try:
            instance = await asyncio.to_thread(_fetch)
        except (BotoCoreError, ClientError) as exc:
            raise _translate_error(exc, "describe", provider_instance_id) from exc

        if instance is None:
            raise InstanceNotFoundError(
                f"Instance {provider_instance_id} not found",
                details={"provider": "aws", "instance_id": provider_instance_id},
            )

        return InstanceDetails(
            provider_instance_id=provider_instance_id,
            status=_map_state(instance.get("State", {}).get("Name", "")),
            public_address=instance.get("PublicIpAddress"),
            private_address=instance.get("PrivateIpAddress"),
            instance_type=instance.get("InstanceType"),
            launch_time=instance.get("LaunchTime"),
            zone=instance.get("Placement", {}).get("AvailabilityZone"),
        )

    async def _describe_health(self, provider_instance_id: str) -> InstanceHealth:
        def _fetch() -> list[dict[str, Any]]:
            resp = self._ec2.describe_instance_status(InstanceIds=[provider_instance_id])
            return list(resp.get("InstanceStatuses", []))

        try:
            statuses = await asyncio.to_thread(_fetch)
        except (BotoCoreError, ClientError) as exc:
            raise _translate_error(exc, "describe_health", provider_instance_id) from exc

        # Freshly launched instances have no status checks yet.
        if not statuses:
            return InstanceHealth(status=ServerStatus.PENDING.value, checks_passed=False)

        entry = statuses[0]
        system_status = entry.get("SystemStatus", {}).get("Status")
        instance_status = entry.get("InstanceStatus", {}).get("Status")
        return InstanceHealth(
            status=entry.get("InstanceState", {}).get("Name", ServerStatus.PENDING.value),
            checks_passed=system_status == "ok" and instance_status == "ok",
            system_status=system_status,
            instance_status=instance_status,
        )

    # ------------------------------------------------------------------
    # Control commands
    # ------------------------------------------------------------------

    async def _start(self, provider_instance_id: str) -> ActionResult:
        await self._send("start_instances", provider_instance_id)
        return ActionResult(accepted_status=ServerStatus.STARTING)

    async def _stop(self, provider_instance_id: str) -> ActionResult:
        await self._send("stop_instances", provider_instance_id)
        return ActionResult(accepted_status=ServerStatus.STOPPING)

    async def _reboot(self, provider_instance_id: str) -> ActionResult:
        await self._send("reboot_instances", provider_instance_id)
        return ActionResult(accepted_status=ServerStatus.REBOOTING)

    async def _terminate(self, provider_instance_id: str) -> ActionResult:
        await self._send("terminate_instances", provider_instance_id)
        return ActionResult(accepted_status=ServerStatus.TERMINATING)

    async def _send(self, method: str, provider_instance_id: str) -> None:
        """Call an EC2 ``*_instances`` method for a single instance.

        EC2 treats stop-on-stopped and terminate-on-terminated as
        successful no-ops, so these calls are idempotent.
        """

        def _invoke() -> None:
            getattr(self._ec2, method)(InstanceIds=[provider_instance_id])

        try:
            await asyncio.to_thread(_invoke)
        except (BotoCoreError, ClientError) as exc:
            raise _translate_error(exc, method, provider_instance_id) from exc
