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

"""Tests for the object store retriever, using botocore's Stubber."""

import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from py_load_fhir.models import ObjectStoreOptions
from py_load_fhir.retriever import IMPORT_SOURCE, ObjectStoreRetriever, object_file_name

pytestmark = pytest.mark.unit

BUCKET = "prescriptions"


@pytest.fixture
def s3_client():
    return boto3.session.Session().client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )


@pytest.fixture
def stubber(s3_client):
    with Stubber(s3_client) as stub:
        yield stub
        stub.assert_no_pending_responses()


@pytest.fixture
def retriever(s3_client):
    return ObjectStoreRetriever(client_factory=lambda options: s3_client)


def body(data: bytes) -> dict:
    return {"Body": StreamingBody(io.BytesIO(data), len(data))}


@pytest.mark.asyncio
async def test_explicit_keys_report_missing_objects(stubber, retriever):
    stubber.add_response("get_object", body(b"<Bundle/>"), {"Bucket": BUCKET, "Key": "in/a.xml"})
    stubber.add_client_error(
        "get_object",
        service_error_code="NoSuchKey",
        http_status_code=404,
        expected_params={"Bucket": BUCKET, "Key": "in/missing.xml"},
    )
    options = ObjectStoreOptions(bucket_name=BUCKET, object_keys=["in/a.xml", "in/missing.xml"])

    outcome = await retriever.load(options)

    assert [document.file_name for document in outcome.files] == ["a.xml"]
    assert outcome.files[0].content.read() == b"<Bundle/>"
    assert [(f.object_key, f.error_message) for f in outcome.failures] == [
        ("in/missing.xml", "Object not found."),
    ]
    assert outcome.warnings == []


@pytest.mark.asyncio
async def test_prefix_listing_stops_at_max_keys_with_warning(stubber, retriever):
    stubber.add_response(
        "list_objects_v2",
        {
            "Contents": [{"Key": "in/a.xml"}, {"Key": "in/b.json"}],
            "IsTruncated": True,
            "NextContinuationToken": "next",
        },
        {"Bucket": BUCKET, "MaxKeys": 2, "Prefix": "in/"},
    )
    stubber.add_response("get_object", body(b"<Bundle/>"), {"Bucket": BUCKET, "Key": "in/a.xml"})
    stubber.add_response("get_object", body(b"{}"), {"Bucket": BUCKET, "Key": "in/b.json"})
    options = ObjectStoreOptions(bucket_name=BUCKET, prefix="in/", max_keys=2)

    outcome = await retriever.load(options)

    assert [document.file_name for document in outcome.files] == ["a.xml", "b.json"]
    assert outcome.failures == []
    assert outcome.warnings == [
        "Reached the maximum of 2 objects. Additional objects were not downloaded.",
    ]


@pytest.mark.asyncio
async def test_prefix_listing_follows_continuation_and_skips_folders(stubber, retriever):
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "in/"}, {"Key": "in/a.xml"}], "IsTruncated": True, "NextContinuationToken": "t1"},
        {"Bucket": BUCKET, "MaxKeys": 25, "Prefix": "in/"},
    )
    stubber.add_response("get_object", body(b"<Bundle/>"), {"Bucket": BUCKET, "Key": "in/a.xml"})
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "in/b.xml"}], "IsTruncated": False},
        {"Bucket": BUCKET, "MaxKeys": 25, "Prefix": "in/", "ContinuationToken": "t1"},
    )
    stubber.add_response("get_object", body(b"<Bundle/>"), {"Bucket": BUCKET, "Key": "in/b.xml"})

    outcome = await retriever.load(ObjectStoreOptions(bucket_name=BUCKET, prefix="in/"))

    assert [document.file_name for document in outcome.files] == ["a.xml", "b.xml"]
    assert outcome.warnings == []


@pytest.mark.asyncio
async def test_empty_prefix_is_reported_as_failure(stubber, retriever):
    stubber.add_response(
        "list_objects_v2", {"IsTruncated": False, "KeyCount": 0},
        {"Bucket": BUCKET, "MaxKeys": 25, "Prefix": "nothing/"},
    )

    outcome = await retriever.load(ObjectStoreOptions(bucket_name=BUCKET, prefix="nothing/"))

    assert outcome.files == []
    assert [(f.object_key, f.error_message) for f in outcome.failures] == [
        (IMPORT_SOURCE, "No objects found with prefix 'nothing/'."),
    ]


@pytest.mark.asyncio
async def test_listing_error_is_reported_as_object_store_error(stubber, retriever):
    stubber.add_client_error(
        "list_objects_v2", service_error_code="NoSuchBucket", http_status_code=404,
    )

    outcome = await retriever.load(ObjectStoreOptions(bucket_name=BUCKET))

    assert len(outcome.failures) == 1
    assert outcome.failures[0].object_key == IMPORT_SOURCE
    assert outcome.failures[0].error_message.startswith("Object store error: ")


@pytest.mark.asyncio
async def test_explicit_key_access_denied_keeps_underlying_message(stubber, retriever):
    stubber.add_client_error(
        "get_object",
        service_error_code="AccessDenied",
        service_message="Access Denied",
        http_status_code=403,
        expected_params={"Bucket": BUCKET, "Key": "in/secret.xml"},
    )
    stubber.add_response("get_object", body(b"{}"), {"Bucket": BUCKET, "Key": "in/open.json"})
    options = ObjectStoreOptions(bucket_name=BUCKET, object_keys=["in/secret.xml", "in/open.json"])

    outcome = await retriever.load(options)

    assert [document.file_name for document in outcome.files] == ["open.json"]
    assert len(outcome.failures) == 1
    failure = outcome.failures[0]
    assert failure.object_key == "in/secret.xml"
    assert "AccessDenied" in failure.error_message
    assert "Access Denied" in failure.error_message


@pytest.mark.asyncio
async def test_prefix_download_failure_does_not_stop_listing(stubber, retriever):
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "in/a.xml"}, {"Key": "in/b.xml"}], "IsTruncated": False},
        {"Bucket": BUCKET, "MaxKeys": 25, "Prefix": "in/"},
    )
    stubber.add_client_error(
        "get_object",
        service_error_code="InternalError",
        http_status_code=500,
        expected_params={"Bucket": BUCKET, "Key": "in/a.xml"},
    )
    stubber.add_response("get_object", body(b"<Bundle/>"), {"Bucket": BUCKET, "Key": "in/b.xml"})

    outcome = await retriever.load(ObjectStoreOptions(bucket_name=BUCKET, prefix="in/"))

    assert [document.file_name for document in outcome.files] == ["b.xml"]
    assert [f.object_key for f in outcome.failures] == ["in/a.xml"]
    assert outcome.warnings == []


@pytest.mark.asyncio
async def test_empty_bucket_without_prefix_is_reported(stubber, retriever):
    stubber.add_response(
        "list_objects_v2", {"IsTruncated": False, "KeyCount": 0}, {"Bucket": BUCKET, "MaxKeys": 25},
    )

    outcome = await retriever.load(ObjectStoreOptions(bucket_name=BUCKET))

    assert outcome.files == []
    assert [(f.object_key, f.error_message) for f in outcome.failures] == [
        (IMPORT_SOURCE, "Bucket is empty."),
    ]


@pytest.mark.asyncio
async def test_invalid_endpoint_is_reported_without_listing():
    options = ObjectStoreOptions(bucket_name=BUCKET, endpoint_url="minio:9000")

    outcome = await ObjectStoreRetriever().load(options)

    assert outcome.files == []
    assert [(f.object_key, f.error_message) for f in outcome.failures] == [
        (IMPORT_SOURCE, "Endpoint URL 'minio:9000' is not a valid absolute URI."),
    ]


@pytest.mark.parametrize(
    ("key", "expected"),
    [("in/2023/rx.xml", "rx.xml"), ("rx.json", "rx.json"), ("in/sub/", "in_sub_")],
)
def test_object_file_name(key, expected):
    assert object_file_name(key) == expected
