"""Emergency report publisher - Kinesis-backed outside-report channel.

Emergency reports are published to a Kinesis stream; a downstream
dispatcher owns the actual call to the medical, police or administrative
service. The stream record carries the target service so one report
fans out into one record per enabled service.

If the stream cannot be reached a redacted payload is written to the log
at CRITICAL so an operator can pick the report up by id and file it
manually.
"""
import json
import logging
import os
from typing import Optional

from carewatch.shared.models import EmergencyReport, PublicService
from carewatch.shared.utils import hash_pii, redact_report_payload
from .collaborators import ChannelResult, EmergencyContactChannel

logger = logging.getLogger(__name__)


class KinesisReportChannel(EmergencyContactChannel):
    """Publishes emergency reports to a Kinesis stream.

    Failure Handling:
        - Never raises; every problem becomes a failed ChannelResult
        - Failures are logged at CRITICAL level with a redacted payload attached
    """

    def __init__(
        self,
        stream_name: str = "carewatch-emergency-reports",
        enabled: bool = True,
        region: Optional[str] = None,
    ):
        """Initialize channel.

        Args:
            stream_name: Kinesis stream name
            enabled: Whether publishing is enabled (disable for local dev)
            region: AWS region (defaults to AWS_REGION env var)
        """
        self.stream_name = stream_name
        self.enabled = enabled
        self.region = region or os.getenv("AWS_REGION", "us-east-1")
        self._kinesis_client = None

        logger.info(
            "REPORT_PUBLISHER_INITIALIZED",
            extra={
                "stream_name": stream_name,
                "enabled": enabled,
                "region": self.region,
            }
        )

    @property
    def kinesis_client(self):
        """Lazy initialization of Kinesis client."""
        if self._kinesis_client is None and self.enabled:
            try:
                import boto3
                self._kinesis_client = boto3.client(
                    "kinesis",
                    region_name=self.region,
                )
            except Exception as e:
                logger.error(
                    "KINESIS_CLIENT_INIT_FAILED",
                    extra={"error": str(e)}
                )
        return self._kinesis_client

    def report(self, report: EmergencyReport, service: PublicService) -> ChannelResult:
        """Publish one report for one public service.

        Args:
            report: Emergency report to hand off
            service: Public service the record is addressed to

        Returns:
            ChannelResult; success means the record reached the stream
        """
        if not self.enabled:
            logger.info(
                "EMERGENCY_REPORT_PUBLISH_SKIPPED",
                extra={"report_id": report.report_id, "reason": "publishing_disabled"}
            )
            return ChannelResult(success=False, detail="publishing_disabled")

        payload = {
            "event_type": "carewatch.emergency.report",
            "service": service.value,
            "report": report.to_payload(),
        }
        log_payload = json.dumps(
            dict(payload, report=redact_report_payload(payload["report"])),
            default=str,
        )

        try:
            if self.kinesis_client is None:
                # Fallback: log the report for manual filing
                logger.critical(
                    "EMERGENCY_REPORT_FALLBACK_LOG",
                    extra={
                        "report_id": report.report_id,
                        "service": service.value,
                        "payload": log_payload,
                        "reason": "kinesis_client_unavailable",
                        "action": "MANUAL_PROCESSING_REQUIRED",
                    }
                )
                return ChannelResult(success=False, detail="kinesis_client_unavailable")

            response = self.kinesis_client.put_record(
                StreamName=self.stream_name,
                Data=json.dumps(payload, default=str),
                PartitionKey=hash_pii(report.user_id),  # Same subject -> same shard
            )

            logger.critical(
                "EMERGENCY_REPORT_PUBLISHED",
                extra={
                    "report_id": report.report_id,
                    "service": service.value,
                    "shard_id": response.get("ShardId"),
                    "sequence_number": response.get("SequenceNumber"),
                }
            )
            return ChannelResult(
                success=True,
                detail=f"sequence {response.get('SequenceNumber')}",
            )

        except Exception as e:
            logger.critical(
                "EMERGENCY_REPORT_PUBLISH_FAILED",
                extra={
                    "report_id": report.report_id,
                    "service": service.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": "MANUAL_REVIEW_REQUIRED",
                    "payload": log_payload,
                }
            )
            return ChannelResult(success=False, detail=f"{type(e).__name__}: {e}")
