"""
Transcode executor backed by AWS MediaConvert.

Submits one H.264/AAC MP4 rendition per source video and reports job status
for the poller. boto3 is blocking, so every SDK call runs in a worker thread.

Dependencies: boto3
"""

import asyncio
import posixpath
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import boto3
import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from jobrelay.jobs.errors import (
    JobCallError,
    RateLimitedError,
    TerminalCallError,
    TransientNetworkError,
)
from jobrelay.jobs.models import ExecutionOutcome, RemoteStatus
from jobrelay.jobs.payloads import TranscodePayload
from jobrelay.jobs.types import JobKind, RemoteState

logger = structlog.get_logger(__name__)

DEFAULT_TARGET_HEIGHT = 720

_TRANSIENT_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "InternalServerErrorException",
        "ServiceUnavailableException",
        "RequestTimeout",
    }
)

_REMOTE_STATES = {
    "SUBMITTED": RemoteState.QUEUED,
    "PROGRESSING": RemoteState.PROCESSING,
    "COMPLETE": RemoteState.COMPLETE,
    "ERROR": RemoteState.ERROR,
    "CANCELED": RemoteState.ERROR,
}


def map_aws_error(error: Exception, operation: str) -> JobCallError:
    """Classify a botocore failure into the call error taxonomy."""
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = err.get("Code", "")
        message = err.get("Message") or str(error)
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

        if code == "TooManyRequestsException" or status == 429:
            return RateLimitedError(f"MediaConvert {operation} throttled: {message}", status_code=status)
        if code in _TRANSIENT_ERROR_CODES or (status is not None and status >= 500):
            return TransientNetworkError(f"MediaConvert {operation} failed: {message}", status_code=status)
        return TerminalCallError(f"MediaConvert {operation} rejected ({code}): {message}", status_code=status)

    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientNetworkError(f"MediaConvert {operation} connection error: {error}")
    return TerminalCallError(f"MediaConvert {operation} failed: {error}")


def output_location_for(source_url: str, destination: str, target_height: int) -> str:
    """MediaConvert names outputs <destination><input stem><name modifier>.mp4."""
    filename = posixpath.basename(urlparse(source_url).path)
    stem = posixpath.splitext(filename)[0] or "output"
    return f"{destination}{stem}-{target_height}p.mp4"


def build_job_settings(
    source_url: str,
    destination: str,
    role_arn: str,
    target_height: int = DEFAULT_TARGET_HEIGHT,
    queue_arn: Optional[str] = None,
    user_metadata: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    """CreateJob request for a single progressive-download MP4 rendition."""
    request: dict[str, Any] = {
        "Role": role_arn,
        "Settings": {
            "OutputGroups": [
                {
                    "Name": f"{target_height}p MP4 Output",
                    "OutputGroupSettings": {
                        "Type": "FILE_GROUP_SETTINGS",
                        "FileGroupSettings": {"Destination": destination},
                    },
                    "Outputs": [
                        {
                            "NameModifier": f"-{target_height}p",
                            "ContainerSettings": {
                                "Container": "MP4",
                                "Mp4Settings": {
                                    "CslgAtom": "INCLUDE",
                                    "FreeSpaceBox": "EXCLUDE",
                                    "MoovPlacement": "PROGRESSIVE_DOWNLOAD",
                                },
                            },
                            "VideoDescription": {
                                "Height": target_height,
                                "ScalingBehavior": "DEFAULT",
                                "AntiAlias": "ENABLED",
                                "Sharpness": 50,
                                "CodecSettings": {
                                    "Codec": "H_264",
                                    "H264Settings": {
                                        "RateControlMode": "QVBR",
                                        "QvbrSettings": {"QvbrQualityLevel": 5},
                                        "MaxBitrate": 3000000 if target_height >= 720 else 2000000,
                                        "QualityTuneLevel": "SINGLE_PASS_HQ",
                                        "CodecProfile": "MAIN",
                                        "CodecLevel": "AUTO",
                                        "GopSize": 60,
                                        "SceneChangeDetect": "ENABLED",
                                        "FramerateControl": "INITIALIZE_FROM_SOURCE",
                                        "ParControl": "INITIALIZE_FROM_SOURCE",
                                    },
                                },
                            },
                            "AudioDescriptions": [
                                {
                                    "AudioSourceName": "Audio Selector 1",
                                    "CodecSettings": {
                                        "Codec": "AAC",
                                        "AacSettings": {
                                            "Bitrate": 128000,
                                            "RateControlMode": "CBR",
                                            "CodecProfile": "LC",
                                            "CodingMode": "CODING_MODE_2_0",
                                            "SampleRate": 48000,
                                        },
                                    },
                                }
                            ],
                        }
                    ],
                }
            ],
            "Inputs": [
                {
                    "FileInput": source_url,
                    "AudioSelectors": {
                        "Audio Selector 1": {"DefaultSelection": "DEFAULT"}
                    },
                    "VideoSelector": {"Rotate": "AUTO"},
                    "TimecodeSource": "ZEROBASED",
                }
            ],
        },
        "UserMetadata": user_metadata or {},
        "StatusUpdateInterval": "SECONDS_10",
        "AccelerationSettings": {"Mode": "PREFERRED"},
    }
    if queue_arn:
        request["Queue"] = queue_arn
    return request


class MediaConvertClient:
    """Async wrapper over the boto3 MediaConvert client."""

    def __init__(
        self,
        role_arn: str,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        queue_arn: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        client_factory: Callable[..., Any] = boto3.client,
    ) -> None:
        """
        Initialize the MediaConvert client.

        Args:
            role_arn: IAM role MediaConvert assumes to read inputs and write outputs
            region: AWS region
            endpoint_url: Account endpoint; discovered via DescribeEndpoints if None
            queue_arn: Queue to submit to (account default if None)
            aws_access_key_id: Explicit credentials (default credential chain if None)
            aws_secret_access_key: Explicit credentials
            client_factory: boto3.client-compatible factory
        """
        self.role_arn = role_arn
        self.queue_arn = queue_arn
        self._region = region
        self._endpoint_url = endpoint_url
        self._credentials: dict[str, str] = {}
        if aws_access_key_id and aws_secret_access_key:
            self._credentials = {
                "aws_access_key_id": aws_access_key_id,
                "aws_secret_access_key": aws_secret_access_key,
            }
        self._client_factory = client_factory
        self._client: Any = None

    def _get_client(self) -> Any:
        """Blocking: resolve the account endpoint once and cache the client."""
        if self._client is not None:
            return self._client

        if self._endpoint_url is None:
            discovery = self._client_factory(
                "mediaconvert", region_name=self._region, **self._credentials
            )
            endpoints = discovery.describe_endpoints().get("Endpoints") or []
            if not endpoints:
                raise TerminalCallError("MediaConvert returned no account endpoint")
            self._endpoint_url = endpoints[0]["Url"]
            logger.info("mediaconvert_endpoint_discovered", endpoint=self._endpoint_url)

        self._client = self._client_factory(
            "mediaconvert",
            region_name=self._region,
            endpoint_url=self._endpoint_url,
            **self._credentials,
        )
        return self._client

    def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return getattr(self._get_client(), operation)(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise map_aws_error(e, operation) from e

    async def create_job(self, request: dict[str, Any]) -> dict[str, Any]:
        """Submit a job. Returns the Job description."""
        response = await asyncio.to_thread(self._call, "create_job", **request)
        return response["Job"]

    async def get_job(self, job_id: str) -> dict[str, Any]:
        """Fetch a job description by id."""
        response = await asyncio.to_thread(self._call, "get_job", Id=job_id)
        return response["Job"]


class TranscodeExecutor:
    """Asynchronous executor: execute() returns a MediaConvert job id to poll."""

    kind = JobKind.TRANSCODE
    is_async = True

    def __init__(
        self,
        client: MediaConvertClient,
        output_bucket: Optional[str] = None,
        target_height: int = DEFAULT_TARGET_HEIGHT,
    ):
        self._client = client
        self._output_bucket = output_bucket
        self._target_height = target_height

    def destination_for(self, payload: TranscodePayload) -> str:
        """s3:// prefix the rendition is written under (always ends with /)."""
        if payload.output_prefix:
            destination = payload.output_prefix
        elif self._output_bucket:
            base = self._output_bucket.rstrip("/")
            if not base.startswith("s3://"):
                base = f"s3://{base}"
            destination = f"{base}/transcoded/pool/{payload.project_id or 'shared'}/"
        else:
            raise TerminalCallError("No output_prefix given and no output bucket configured")
        return destination if destination.endswith("/") else f"{destination}/"

    async def execute(self, payload: TranscodePayload) -> ExecutionOutcome:
        destination = self.destination_for(payload)
        metadata = {
            key: value
            for key, value in {
                "videoId": payload.video_id,
                "projectId": payload.project_id,
                "targetHeight": str(self._target_height),
            }.items()
            if value
        }
        request = build_job_settings(
            payload.source_url,
            destination,
            role_arn=self._client.role_arn,
            target_height=self._target_height,
            queue_arn=self._client.queue_arn,
            user_metadata=metadata,
        )

        job = await self._client.create_job(request)
        job_id = job.get("Id")
        if not job_id:
            raise TransientNetworkError("MediaConvert create_job returned no job id")

        logger.info(
            "transcode_job_submitted",
            remote_handle=job_id,
            video_id=payload.video_id,
            output_location=output_location_for(
                payload.source_url, destination, self._target_height
            ),
        )
        return ExecutionOutcome(remote_handle=job_id)

    async def fetch_status(self, remote_handle: str) -> RemoteStatus:
        job = await self._client.get_job(remote_handle)
        raw_state = job.get("Status", "")
        state = _REMOTE_STATES.get(raw_state, RemoteState.PROCESSING)

        output_location = None
        if state is RemoteState.COMPLETE:
            output_location = self._output_location(job)

        error_message = None
        if state is RemoteState.ERROR:
            error_message = job.get("ErrorMessage") or (
                "Job canceled" if raw_state == "CANCELED" else "Job failed"
            )

        return RemoteStatus(
            state=state,
            percent_complete=job.get("JobPercentComplete"),
            output_location=output_location,
            error_message=error_message,
            raw_state=raw_state or None,
        )

    def _output_location(self, job: dict[str, Any]) -> Optional[str]:
        settings = job.get("Settings", {})
        try:
            source_url = settings["Inputs"][0]["FileInput"]
            group = settings["OutputGroups"][0]
            destination = group["OutputGroupSettings"]["FileGroupSettings"]["Destination"]
            modifier = group["Outputs"][0].get("NameModifier", "")
        except (KeyError, IndexError):
            return None
        stem = posixpath.splitext(posixpath.basename(urlparse(source_url).path))[0]
        return f"{destination}{stem or 'output'}{modifier}.mp4"
