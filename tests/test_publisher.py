"""Tests for the S3 publisher: keys, content types, addressing, all-or-nothing."""
import threading
import time
from concurrent.futures import TimeoutError as FuturesTimeoutError

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from videos.discovery import build_artifacts, discover
from videos.errors import PublishError
from videos.s3 import Publisher, S3Config, key_from_url, object_url

from .conftest import write_hls_tree


def _uploaded(client):
    """{key: ContentType} for every upload_file call on the fake client."""
    return {c.args[2]: c.kwargs["ExtraArgs"]["ContentType"] for c in client.upload_file.call_args_list}


def _deleted(client):
    keys = []
    for c in client.delete_objects.call_args_list:
        keys += [o["Key"] for o in c.kwargs["Delete"]["Objects"]]
    return keys


class TestAddressing:
    def test_aws_virtual_hosted_url(self, s3_config):
        assert object_url(s3_config, "videos/abc123/master.m3u8") == (
            "https://media-test.s3.eu-west-1.amazonaws.com/videos/abc123/master.m3u8"
        )

    def test_public_endpoint_path_style(self):
        cfg = S3Config(bucket="media-local", public_endpoint="http://127.0.0.1:9000/")
        assert object_url(cfg, "videos/abc123/master.m3u8") == (
            "http://127.0.0.1:9000/media-local/videos/abc123/master.m3u8"
        )

    @pytest.mark.parametrize("public_endpoint", [None, "https://cdn.example.com"])
    def test_url_round_trips_to_key(self, public_endpoint):
        cfg = S3Config(bucket="media-test", region="ap-south-1", public_endpoint=public_endpoint)
        key = "videos/abc 123/hls_0/index.m3u8"
        assert key_from_url(cfg, object_url(cfg, key)) == key

    def test_foreign_url_rejected(self, s3_config):
        with pytest.raises(ValueError):
            key_from_url(s3_config, "https://other.s3.eu-west-1.amazonaws.com/videos/x/master.m3u8")

    def test_settings_config(self, settings):
        settings.S3_BUCKET = "prod-media"
        settings.S3_KEY_PREFIX = "/streams/"
        settings.S3_UPLOAD_CONCURRENCY = 0

        cfg = S3Config.from_settings()

        assert cfg.bucket == "prod-media"
        assert cfg.key_prefix == "streams"
        assert cfg.upload_concurrency == 1


class TestPublish:
    def test_uploads_every_artifact_with_content_type(self, tmp_path, ladder, publisher, s3_client):
        write_hls_tree(tmp_path, ladder)
        artifacts = discover(tmp_path)

        result = publisher.publish("abc123", artifacts)

        uploaded = _uploaded(s3_client)
        assert sorted(uploaded) == sorted(f"videos/abc123/{a.relative_path}" for a in artifacts)
        assert uploaded["videos/abc123/master.m3u8"] == "application/vnd.apple.mpegurl"
        assert uploaded["videos/abc123/hls_2/index.m3u8"] == "application/vnd.apple.mpegurl"
        assert uploaded["videos/abc123/hls_2/segment_001.ts"] == "video/MP2T"
        assert all(c.args[1] == "media-test" for c in s3_client.upload_file.call_args_list)
        assert result.ok
        assert len(result.outcomes) == len(artifacts)
        s3_client.delete_objects.assert_not_called()

    def test_master_url_points_at_stored_master(self, tmp_path, ladder, publisher, s3_client, s3_config):
        write_hls_tree(tmp_path, ladder)

        result = publisher.publish("abc123", discover(tmp_path))

        assert result.master_url.endswith("/videos/abc123/master.m3u8")
        key = key_from_url(s3_config, result.master_url)
        assert key == "videos/abc123/master.m3u8"
        assert key in _uploaded(s3_client)

    def test_one_failure_fails_the_batch(self, tmp_path, s3_client):
        """Upload #3 of 10 fails: no URL, and the two stored objects are removed."""
        rels = [f"hls_0/segment_{n:03d}.ts" for n in range(9)] + ["master.m3u8"]
        artifacts = build_artifacts(tmp_path, rels)
        third_key = f"videos/job-1/{artifacts[2].relative_path}"

        def upload(local, bucket, key, ExtraArgs=None):
            if key == third_key:
                raise EndpointConnectionError(endpoint_url="https://s3.example")

        s3_client.upload_file.side_effect = upload
        publisher = Publisher(S3Config(bucket="media-test", upload_concurrency=1), client=s3_client)

        with pytest.raises(PublishError) as exc:
            publisher.publish("job-1", artifacts)

        err = exc.value
        assert err.key == third_key
        assert isinstance(err.cause, EndpointConnectionError)
        assert err.result.master_url is None
        assert not err.result.ok
        # Sequential pool: two stored, third failed, rest never attempted
        assert s3_client.upload_file.call_count == 3
        assert sorted(_deleted(s3_client)) == sorted(f"videos/job-1/{a.relative_path}" for a in artifacts[:2])

    def test_concurrent_failure_cleans_up_what_was_stored(self, tmp_path, ladder, s3_client):
        write_hls_tree(tmp_path, ladder, segments=5)
        artifacts = discover(tmp_path)
        stored = []
        lock = threading.Lock()

        def upload(local, bucket, key, ExtraArgs=None):
            if key.endswith("hls_1/segment_002.ts"):
                raise ClientError({"Error": {"Code": "SlowDown", "Message": "Reduce your request rate"}}, "PutObject")
            with lock:
                stored.append(key)

        s3_client.upload_file.side_effect = upload
        publisher = Publisher(S3Config(bucket="media-test", upload_concurrency=4), client=s3_client)

        with pytest.raises(PublishError, match="SlowDown"):
            publisher.publish("job-2", artifacts)

        assert sorted(_deleted(s3_client)) == sorted(stored)
        assert len(stored) < len(artifacts)

    def test_cleanup_can_be_disabled(self, tmp_path, s3_client):
        artifacts = build_artifacts(tmp_path, ["a.ts", "b.ts", "master.m3u8"])

        def upload(local, bucket, key, ExtraArgs=None):
            if key.endswith("b.ts"):
                raise OSError("disk read error")

        s3_client.upload_file.side_effect = upload
        cfg = S3Config(bucket="media-test", upload_concurrency=1, cleanup_on_failure=False)

        with pytest.raises(PublishError):
            Publisher(cfg, client=s3_client).publish("job-3", artifacts)

        s3_client.delete_objects.assert_not_called()

    def test_failed_cleanup_does_not_mask_publish_error(self, tmp_path, s3_client):
        artifacts = build_artifacts(tmp_path, ["a.ts", "b.ts"])

        def upload(local, bucket, key, ExtraArgs=None):
            if key.endswith("b.ts"):
                raise OSError("gone")

        s3_client.upload_file.side_effect = upload
        s3_client.delete_objects.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "DeleteObjects")
        cfg = S3Config(bucket="media-test", upload_concurrency=1)

        with pytest.raises(PublishError, match="gone"):
            Publisher(cfg, client=s3_client).publish("job-4", artifacts)

    def test_timeout(self, tmp_path, s3_client):
        artifacts = build_artifacts(tmp_path, ["a.ts", "b.ts", "master.m3u8"])
        release = threading.Event()

        def upload(local, bucket, key, ExtraArgs=None):
            release.wait(0.5)

        s3_client.upload_file.side_effect = upload
        cfg = S3Config(bucket="media-test", upload_concurrency=1)

        with pytest.raises(FuturesTimeoutError):
            Publisher(cfg, client=s3_client).publish("job-5", artifacts, timeout=0.05)

        # The in-flight upload finished and was rolled back; queued ones never ran
        assert s3_client.upload_file.call_count == 1
        assert _deleted(s3_client) == ["videos/job-5/a.ts"]

    def test_timeout_does_not_wait_for_stuck_upload(self, tmp_path, s3_client):
        artifacts = build_artifacts(tmp_path, ["a.ts", "master.m3u8"])
        release = threading.Event()

        def upload(local, bucket, key, ExtraArgs=None):
            if key.endswith("a.ts"):
                release.wait(5)

        s3_client.upload_file.side_effect = upload
        cfg = S3Config(bucket="media-test", upload_concurrency=2, settle_seconds=0.05)

        started = time.monotonic()
        with pytest.raises(FuturesTimeoutError):
            Publisher(cfg, client=s3_client).publish("job-7", artifacts, timeout=0.05)
        assert time.monotonic() - started < 2

        # The stuck PUT lands later and is removed together with what was stored
        release.set()
        for _ in range(100):
            if "videos/job-7/a.ts" in _deleted(s3_client):
                break
            time.sleep(0.02)
        assert sorted(_deleted(s3_client)) == ["videos/job-7/a.ts", "videos/job-7/master.m3u8"]

    def test_duplicate_keys_rejected(self, tmp_path, publisher, s3_client):
        artifacts = build_artifacts(tmp_path, ["a.ts"]) * 2

        with pytest.raises(PublishError, match="duplicate"):
            publisher.publish("job-6", artifacts)
        s3_client.upload_file.assert_not_called()
