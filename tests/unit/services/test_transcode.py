"""Tests for the MediaConvert client and transcode executor."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from jobrelay.jobs.errors import (
    RateLimitedError,
    TerminalCallError,
    TransientNetworkError,
)
from jobrelay.jobs.payloads import TranscodePayload
from jobrelay.jobs.types import RemoteState
from jobrelay.services.transcode import (
    MediaConvertClient,
    TranscodeExecutor,
    build_job_settings,
    map_aws_error,
    output_location_for,
)

ROLE_ARN = "arn:aws:iam::123456789012:role/MediaConvertRole"


def _client_error(code: str, status: int, message: str = "nope") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "CreateJob",
    )


@pytest.fixture
def sdk():
    """Mock boto3 MediaConvert client."""
    client = MagicMock()
    client.describe_endpoints.return_value = {
        "Endpoints": [{"Url": "https://abcd1234.mediaconvert.us-east-1.amazonaws.com"}]
    }
    client.create_job.return_value = {"Job": {"Id": "1700000000000-abc123"}}
    return client


@pytest.fixture
def factory(sdk):
    return MagicMock(return_value=sdk)


@pytest.fixture
def client(factory):
    return MediaConvertClient(role_arn=ROLE_ARN, client_factory=factory)


@pytest.fixture
def executor(client):
    return TranscodeExecutor(client, output_bucket="inspection-videos")


# =============================================================================
# Error Mapping
# =============================================================================


class TestMapAwsError:
    def test_too_many_requests(self):
        error = map_aws_error(_client_error("TooManyRequestsException", 429), "create_job")
        assert isinstance(error, RateLimitedError)

    @pytest.mark.parametrize(
        "code,status",
        [
            ("ThrottlingException", 400),
            ("InternalServerErrorException", 500),
            ("ServiceUnavailableException", 503),
            ("SomethingNew", 502),
        ],
    )
    def test_transient(self, code, status):
        error = map_aws_error(_client_error(code, status), "get_job")
        assert isinstance(error, TransientNetworkError)
        assert error.status_code == status

    @pytest.mark.parametrize(
        "code,status",
        [("BadRequestException", 400), ("ForbiddenException", 403), ("NotFoundException", 404)],
    )
    def test_terminal(self, code, status):
        error = map_aws_error(_client_error(code, status, "Invalid input"), "create_job")
        assert isinstance(error, TerminalCallError)
        assert code in str(error)

    def test_connection_failure_is_transient(self):
        error = map_aws_error(
            EndpointConnectionError(endpoint_url="https://mediaconvert"), "get_job"
        )
        assert isinstance(error, TransientNetworkError)

    def test_missing_credentials_is_terminal(self):
        assert isinstance(map_aws_error(NoCredentialsError(), "create_job"), TerminalCallError)


# =============================================================================
# Job Settings
# =============================================================================


class TestJobSettings:
    def test_single_mp4_rendition(self):
        request = build_job_settings(
            "s3://uploads/run-1/MH12_MH13.mov",
            "s3://out/transcoded/",
            role_arn=ROLE_ARN,
            queue_arn="arn:aws:mediaconvert:queue/Default",
            user_metadata={"videoId": "v-1"},
        )

        assert request["Role"] == ROLE_ARN
        assert request["Queue"] == "arn:aws:mediaconvert:queue/Default"
        assert request["UserMetadata"] == {"videoId": "v-1"}
        assert request["Settings"]["Inputs"][0]["FileInput"] == "s3://uploads/run-1/MH12_MH13.mov"
        group = request["Settings"]["OutputGroups"][0]
        assert group["OutputGroupSettings"]["FileGroupSettings"]["Destination"] == "s3://out/transcoded/"
        output = group["Outputs"][0]
        assert output["NameModifier"] == "-720p"
        assert output["ContainerSettings"]["Container"] == "MP4"
        assert output["VideoDescription"]["Height"] == 720

    def test_queue_omitted_when_unset(self):
        request = build_job_settings("s3://a/b.mp4", "s3://out/", role_arn=ROLE_ARN)
        assert "Queue" not in request

    def test_output_location(self):
        assert (
            output_location_for("s3://uploads/run-1/MH12.mov", "s3://out/", 720)
            == "s3://out/MH12-720p.mp4"
        )


# =============================================================================
# MediaConvert Client
# =============================================================================


class TestMediaConvertClient:
    @pytest.mark.asyncio
    async def test_endpoint_discovered_once(self, client, factory, sdk):
        await client.create_job({"Role": ROLE_ARN})
        await client.get_job("1700000000000-abc123")

        sdk.describe_endpoints.assert_called_once()
        # Discovery client plus the endpoint-bound client
        assert factory.call_count == 2
        assert (
            factory.call_args.kwargs["endpoint_url"]
            == "https://abcd1234.mediaconvert.us-east-1.amazonaws.com"
        )

    @pytest.mark.asyncio
    async def test_configured_endpoint_skips_discovery(self, factory, sdk):
        client = MediaConvertClient(
            role_arn=ROLE_ARN,
            endpoint_url="https://fixed.mediaconvert.amazonaws.com",
            aws_access_key_id="AKIA",
            aws_secret_access_key="secret",
            client_factory=factory,
        )
        sdk.get_job.return_value = {"Job": {"Id": "j-1", "Status": "PROGRESSING"}}

        job = await client.get_job("j-1")

        assert job["Status"] == "PROGRESSING"
        sdk.describe_endpoints.assert_not_called()
        factory.assert_called_once_with(
            "mediaconvert",
            region_name="us-east-1",
            endpoint_url="https://fixed.mediaconvert.amazonaws.com",
            aws_access_key_id="AKIA",
            aws_secret_access_key="secret",
        )

    @pytest.mark.asyncio
    async def test_sdk_errors_are_mapped(self, client, sdk):
        sdk.create_job.side_effect = _client_error("TooManyRequestsException", 429)
        with pytest.raises(RateLimitedError):
            await client.create_job({"Role": ROLE_ARN})

    @pytest.mark.asyncio
    async def test_no_endpoint_is_terminal(self, client, sdk):
        sdk.describe_endpoints.return_value = {"Endpoints": []}
        with pytest.raises(TerminalCallError, match="no account endpoint"):
            await client.get_job("j-1")


# =============================================================================
# Transcode Executor
# =============================================================================


class TestTranscodeExecutor:
    def test_destination_from_payload(self, executor):
        payload = TranscodePayload(source_url="s3://a/b.mov", output_prefix="s3://custom/dir")
        assert executor.destination_for(payload) == "s3://custom/dir/"

    def test_destination_from_bucket(self, executor):
        payload = TranscodePayload(source_url="s3://a/b.mov", project_id="proj-7")
        assert (
            executor.destination_for(payload)
            == "s3://inspection-videos/transcoded/pool/proj-7/"
        )
        shared = TranscodePayload(source_url="s3://a/b.mov")
        assert executor.destination_for(shared).endswith("/pool/shared/")

    def test_destination_required(self, client):
        executor = TranscodeExecutor(client)
        with pytest.raises(TerminalCallError):
            executor.destination_for(TranscodePayload(source_url="s3://a/b.mov"))

    @pytest.mark.asyncio
    async def test_execute_returns_handle(self, executor, sdk):
        payload = TranscodePayload(
            source_url="s3://uploads/MH12.mov", video_id="v-1", project_id="proj-7"
        )

        outcome = await executor.execute(payload)

        assert outcome.is_remote
        assert outcome.remote_handle == "1700000000000-abc123"
        request = sdk.create_job.call_args.kwargs
        assert request["Role"] == ROLE_ARN
        assert request["UserMetadata"] == {
            "videoId": "v-1",
            "projectId": "proj-7",
            "targetHeight": "720",
        }

    @pytest.mark.asyncio
    async def test_execute_without_job_id(self, executor, sdk):
        sdk.create_job.return_value = {"Job": {}}
        with pytest.raises(TransientNetworkError):
            await executor.execute(TranscodePayload(source_url="s3://a/b.mov"))

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("SUBMITTED", RemoteState.QUEUED),
            ("PROGRESSING", RemoteState.PROCESSING),
            ("SOMETHING_NEW", RemoteState.PROCESSING),
        ],
    )
    @pytest.mark.asyncio
    async def test_fetch_status_in_flight(self, executor, sdk, raw, expected):
        sdk.get_job.return_value = {"Job": {"Status": raw, "JobPercentComplete": 35}}

        status = await executor.fetch_status("j-1")

        assert status.state is expected
        assert status.percent_complete == 35
        assert status.raw_state == raw

    @pytest.mark.asyncio
    async def test_fetch_status_complete(self, executor, sdk):
        request = build_job_settings(
            "s3://uploads/MH12.mov", "s3://out/pool/", role_arn=ROLE_ARN
        )
        sdk.get_job.return_value = {
            "Job": {"Status": "COMPLETE", "Settings": request["Settings"]}
        }

        status = await executor.fetch_status("j-1")

        assert status.state is RemoteState.COMPLETE
        assert status.output_location == "s3://out/pool/MH12-720p.mp4"

    @pytest.mark.asyncio
    async def test_fetch_status_error(self, executor, sdk):
        sdk.get_job.return_value = {
            "Job": {"Status": "ERROR", "ErrorMessage": "Unable to open input file"}
        }
        status = await executor.fetch_status("j-1")
        assert status.state is RemoteState.ERROR
        assert status.error_message == "Unable to open input file"

    @pytest.mark.asyncio
    async def test_fetch_status_canceled(self, executor, sdk):
        sdk.get_job.return_value = {"Job": {"Status": "CANCELED"}}
        status = await executor.fetch_status("j-1")
        assert status.state is RemoteState.ERROR
        assert status.error_message == "Job canceled"
