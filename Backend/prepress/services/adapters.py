"""
Input/Output adapters.

Everything that touches job bytes goes through these two capabilities:
  InputAdapter:  store_input / fetch_input / delete_input
  OutputAdapter: store_output / read_output / delete_job

The concrete pair is chosen once per process (build_adapters) and injected
into the submit route, the pipeline, the processor and the cleanup sweeper,
so switching to remote storage never touches any of them.
"""
import abc
import asyncio
import logging
from typing import Literal, Tuple

from prepress.core.config import Settings
from prepress.core.errors import InputMissingError, OutputMissingError
from prepress.services.storage import (
    OUTPUT_FILENAMES,
    cleanup_scratch_files,
    delete_job_directory,
    get_job_paths,
    initialize_job_directory,
    read_file,
    write_file,
)

logger = logging.getLogger(__name__)

OutputKind = Literal["report_json", "proof_png", "fixed_pdf"]

INPUT_NAME = "input.pdf"

# delete_objects accepts at most this many keys per request
S3_DELETE_BATCH = 1000


class InputAdapter(abc.ABC):
    """Home of the uploaded bytes for a job."""

    @abc.abstractmethod
    async def store_input(self, job_id: str, data: bytes) -> None:
        pass

    @abc.abstractmethod
    async def fetch_input(self, job_id: str) -> bytes:
        """
        Return the input bytes. Raises InputMissingError if there are none.
        """
        pass

    @abc.abstractmethod
    async def delete_input(self, job_id: str) -> None:
        """Remove the input once it is no longer needed. Missing input is not an error."""
        pass


class OutputAdapter(abc.ABC):
    """Destination for the artifacts a job produces."""

    @abc.abstractmethod
    async def store_output(self, job_id: str, kind: OutputKind, data: bytes) -> None:
        pass

    @abc.abstractmethod
    async def read_output(self, job_id: str, kind: OutputKind) -> bytes:
        """
        Return a stored artifact. Raises OutputMissingError if it is gone.
        """
        pass

    @abc.abstractmethod
    async def delete_job(self, job_id: str) -> None:
        """Remove everything stored for the job. Idempotent."""
        pass


# ─── Local filesystem ────────────────────────────────────────────────────────

class LocalInputAdapter(InputAdapter):
    """Reads and writes {tempRoot}/{jobId}/input.pdf."""

    async def store_input(self, job_id: str, data: bytes) -> None:
        write_file(initialize_job_directory(job_id).input_file, data)

    async def fetch_input(self, job_id: str) -> bytes:
        path = get_job_paths(job_id).input_file
        try:
            return read_file(path)
        except FileNotFoundError:
            raise InputMissingError(f"Input file for job {job_id} is missing", {"job_id": job_id})

    async def delete_input(self, job_id: str) -> None:
        cleanup_scratch_files(job_id)


class LocalOutputAdapter(OutputAdapter):
    """Writes {tempRoot}/{jobId}/output/{report.json|proof.png|fixed.pdf}."""

    async def store_output(self, job_id: str, kind: OutputKind, data: bytes) -> None:
        path = get_job_paths(job_id).output_path(kind)
        write_file(path, data)
        logger.info(f"Stored {kind} for job {job_id} ({len(data)} bytes)")

    async def read_output(self, job_id: str, kind: OutputKind) -> bytes:
        path = get_job_paths(job_id).output_path(kind)
        try:
            return read_file(path)
        except FileNotFoundError:
            raise OutputMissingError(f"{kind} for job {job_id} is missing from disk", {"job_id": job_id})

    async def delete_job(self, job_id: str) -> None:
        delete_job_directory(job_id)


# ─── S3 ──────────────────────────────────────────────────────────────────────

class _S3Base:
    """
    Objects live under {prefix}/{jobId}/... mirroring the local layout.
    boto3 is blocking, so calls run in a worker thread.
    """
    def __init__(self, client, bucket: str, prefix: str = "prepress"):
        self.s3 = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    def _key(self, job_id: str, name: str) -> str:
        # Same id rules as the local layout; the id is a key segment
        get_job_paths(job_id)
        return f"{self.prefix}/{job_id}/{name}"

    def _output_key(self, job_id: str, kind: str) -> str:
        if kind not in OUTPUT_FILENAMES:
            raise ValueError(f"Unknown output kind: {kind}")
        return self._key(job_id, f"output/{OUTPUT_FILENAMES[kind]}")

    async def _get(self, key: str) -> bytes | None:
        try:
            response = await asyncio.to_thread(self.s3.get_object, Bucket=self.bucket, Key=key)
        except self.s3.exceptions.NoSuchKey:
            return None
        return await asyncio.to_thread(response["Body"].read)


class S3InputAdapter(_S3Base, InputAdapter):

    async def store_input(self, job_id: str, data: bytes) -> None:
        key = self._key(job_id, INPUT_NAME)
        await asyncio.to_thread(self.s3.put_object, Bucket=self.bucket, Key=key, Body=data)
        logger.info(f"Stored input for job {job_id} at s3://{self.bucket}/{key}")

    async def fetch_input(self, job_id: str) -> bytes:
        key = self._key(job_id, INPUT_NAME)
        data = await self._get(key)
        if data is None:
            raise InputMissingError(f"Input object {key} is missing", {"job_id": job_id})
        return data

    async def delete_input(self, job_id: str) -> None:
        # delete_object succeeds for absent keys
        await asyncio.to_thread(self.s3.delete_object, Bucket=self.bucket, Key=self._key(job_id, INPUT_NAME))


class S3OutputAdapter(_S3Base, OutputAdapter):

    async def store_output(self, job_id: str, kind: OutputKind, data: bytes) -> None:
        key = self._output_key(job_id, kind)
        await asyncio.to_thread(self.s3.put_object, Bucket=self.bucket, Key=key, Body=data)
        logger.info(f"Stored {kind} for job {job_id} at s3://{self.bucket}/{key}")

    async def read_output(self, job_id: str, kind: OutputKind) -> bytes:
        key = self._output_key(job_id, kind)
        data = await self._get(key)
        if data is None:
            raise OutputMissingError(f"Output object {key} is missing", {"job_id": job_id})
        return data

    async def delete_job(self, job_id: str) -> None:
        keys = await asyncio.to_thread(self._list_keys, self._key(job_id, ""))
        for start in range(0, len(keys), S3_DELETE_BATCH):
            batch = keys[start:start + S3_DELETE_BATCH]
            await asyncio.to_thread(
                self.s3.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
        if keys:
            logger.info(f"Deleted {len(keys)} objects for job {job_id} from s3://{self.bucket}")

    def _list_keys(self, prefix: str) -> list[str]:
        keys = []
        kwargs = {"Bucket": self.bucket, "Prefix": prefix}
        while True:
            response = self.s3.list_objects_v2(**kwargs)
            keys.extend(item["Key"] for item in response.get("Contents", []))
            if not response.get("IsTruncated"):
                return keys
            kwargs["ContinuationToken"] = response["NextContinuationToken"]


# ─── Factory ─────────────────────────────────────────────────────────────────

def build_adapters(config: Settings) -> Tuple[InputAdapter, OutputAdapter]:
    """Pick the adapter pair for this process. Called once at startup."""
    if config.STORAGE_TYPE.lower() == "s3":
        import boto3
        client = boto3.client(
            "s3",
            aws_access_key_id=config.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY,
            region_name=config.AWS_REGION,
        )
        return (
            S3InputAdapter(client, config.AWS_BUCKET_NAME),
            S3OutputAdapter(client, config.AWS_BUCKET_NAME),
        )
    return LocalInputAdapter(), LocalOutputAdapter()
