# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides a class to download FHIR documents from an S3-compatible bucket."""

import asyncio
import io
import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .models import ObjectFailure, ObjectFetchOutcome, ObjectStoreOptions, RawDocument

logger = logging.getLogger(__name__)

# Failures not tied to a single object are reported under this name.
IMPORT_SOURCE = "(object store import)"

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


def build_s3_client(options: ObjectStoreOptions) -> Any:
    """Create a boto3 S3 client for the given options.

    Raises:
        ValueError: If the endpoint URL is not an absolute http(s) URL.
    """
    endpoint_url = options.endpoint_url
    if endpoint_url is not None:
        parsed = urlparse(endpoint_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            msg = f"Endpoint URL '{endpoint_url}' is not a valid absolute URI."
            raise ValueError(msg)

    config = Config(
        s3={"addressing_style": "path" if options.force_path_style else "auto"},
        retries={"mode": "standard", "max_attempts": 3},
    )
    return boto3.session.Session().client(
        "s3",
        aws_access_key_id=options.access_key_id or None,
        aws_secret_access_key=options.secret_access_key or None,
        region_name=options.region or "us-east-1",
        endpoint_url=endpoint_url,
        config=config,
    )


def object_file_name(key: str) -> str:
    """Return the last path segment of ``key``, or the flattened key if it has none."""
    name = key.rsplit("/", 1)[-1]
    return name or key.replace("/", "_")


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code in NOT_FOUND_CODES or status == 404


def _download(client: Any, bucket: str, key: str) -> RawDocument:
    response = client.get_object(Bucket=bucket, Key=key)
    body = response["Body"]
    try:
        data = body.read()
    finally:
        body.close()
    return RawDocument(file_name=object_file_name(key), content=io.BytesIO(data))


class ObjectStoreRetriever:
    """Fetches documents from a bucket, either by exact keys or by prefix.

    Every blocking boto3 call runs in a worker thread, so cancelling the
    awaiting task stops the retrieval between calls.
    """

    def __init__(
        self, client_factory: Callable[[ObjectStoreOptions], Any] | None = None,
    ) -> None:
        """Initialize the retriever with an optional S3 client factory."""
        self.client_factory = client_factory or build_s3_client

    async def load(self, options: ObjectStoreOptions) -> ObjectFetchOutcome:
        """Download the objects selected by ``options``.

        Failures are reported per object and never abort the batch. The
        outcome always explains itself: when nothing was downloaded and
        nothing failed, a generic failure is added.
        """
        outcome = ObjectFetchOutcome()

        try:
            client = self.client_factory(options)
        except (ValueError, BotoCoreError) as e:
            logger.error("Failed to configure the S3 client: %s", e)
            outcome.failures.append(ObjectFailure(object_key=IMPORT_SOURCE, error_message=str(e)))
            return outcome

        try:
            if options.has_explicit_keys:
                await self._load_explicit_keys(client, options, outcome)
            else:
                await self._load_by_prefix(client, options, outcome)
        except ClientError as e:
            logger.error("S3 request failed for bucket %s: %s", options.bucket_name, e)
            outcome.failures.append(
                ObjectFailure(object_key=IMPORT_SOURCE, error_message=f"Object store error: {e}"),
            )
        except BotoCoreError as e:
            logger.error("Unexpected failure importing from bucket %s: %s", options.bucket_name, e)
            outcome.failures.append(ObjectFailure(object_key=IMPORT_SOURCE, error_message=str(e)))

        if not outcome.any_success and not outcome.failures:
            outcome.failures.append(
                ObjectFailure(object_key=IMPORT_SOURCE, error_message="No objects were downloaded."),
            )

        logger.info(
            "Object store import from %s: %d file(s), %d failure(s)",
            options.bucket_name,
            len(outcome.files),
            len(outcome.failures),
        )
        return outcome

    async def _load_explicit_keys(
        self, client: Any, options: ObjectStoreOptions, outcome: ObjectFetchOutcome,
    ) -> None:
        for key in options.object_keys:
            try:
                document = await asyncio.to_thread(_download, client, options.bucket_name, key)
            except ClientError as e:
                if _is_not_found(e):
                    logger.warning("S3 object %s not found in bucket %s.", key, options.bucket_name)
                    outcome.failures.append(
                        ObjectFailure(object_key=key, error_message="Object not found."),
                    )
                else:
                    logger.error("Failed to download S3 object %s: %s", key, e)
                    outcome.failures.append(ObjectFailure(object_key=key, error_message=str(e)))
                continue
            except (BotoCoreError, OSError) as e:
                logger.error("Failed to download S3 object %s: %s", key, e)
                outcome.failures.append(ObjectFailure(object_key=key, error_message=str(e)))
                continue
            outcome.files.append(document)

    async def _load_by_prefix(
        self, client: Any, options: ObjectStoreOptions, outcome: ObjectFetchOutcome,
    ) -> None:
        request: dict[str, Any] = {"Bucket": options.bucket_name, "MaxKeys": options.max_keys}
        if options.prefix:
            request["Prefix"] = options.prefix

        more_objects = False
        while True:
            response = await asyncio.to_thread(client.list_objects_v2, **request)
            objects = [
                obj for obj in response.get("Contents", []) if not obj["Key"].endswith("/")
            ]

            for index, obj in enumerate(objects):
                key = obj["Key"]
                try:
                    document = await asyncio.to_thread(_download, client, options.bucket_name, key)
                    outcome.files.append(document)
                except (ClientError, BotoCoreError, OSError) as e:
                    logger.error("Failed to download S3 object %s: %s", key, e)
                    outcome.failures.append(ObjectFailure(object_key=key, error_message=str(e)))

                if len(outcome.files) >= options.max_keys:
                    more_objects = index + 1 < len(objects)
                    break

            truncated = bool(response.get("IsTruncated"))
            token = response.get("NextContinuationToken")
            if len(outcome.files) >= options.max_keys:
                more_objects = more_objects or truncated
                break
            if not truncated or not token:
                break
            request["ContinuationToken"] = token

        if more_objects:
            outcome.warnings.append(
                f"Reached the maximum of {options.max_keys} objects. "
                "Additional objects were not downloaded.",
            )

        if not outcome.files and not outcome.failures:
            message = (
                f"No objects found with prefix '{options.prefix}'."
                if options.prefix
                else "Bucket is empty."
            )
            outcome.failures.append(ObjectFailure(object_key=IMPORT_SOURCE, error_message=message))
