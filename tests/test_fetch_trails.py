#!/usr/bin/env python3
"""
Tests for downloading CloudTrail dumps from S3.

Uses unittest.mock to stand in for the boto3 S3 client, so no AWS account
is needed.
"""

import sys
from datetime import date
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add project root so we can import fetch_trails
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

# Mock install_dependencies so it doesn't install packages during tests
with patch("_helpers.install_dependencies"):
    import fetch_trails


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_s3_client(pages):
    mock_paginator = MagicMock()
    mock_paginator.paginate.return_value = pages
    mock_s3 = MagicMock()
    mock_s3.get_paginator.return_value = mock_paginator
    return mock_s3


# ---------------------------------------------------------------------------
# Prefixes
# ---------------------------------------------------------------------------


def test_build_prefixes_single_account():
    prefixes = fetch_trails.build_prefixes(
        "111111111111", ["us-east-1"], date(2026, 2, 27), date(2026, 3, 1)
    )
    assert prefixes == [
        "AWSLogs/111111111111/CloudTrail/us-east-1/2026/02/27/",
        "AWSLogs/111111111111/CloudTrail/us-east-1/2026/02/28/",
        "AWSLogs/111111111111/CloudTrail/us-east-1/2026/03/01/",
    ]


def test_build_prefixes_org_trail_multi_region():
    prefixes = fetch_trails.build_prefixes(
        "222222222222", ["us-east-1", "eu-west-1"],
        date(2026, 2, 20), date(2026, 2, 20), organization_id="o-abc123",
    )
    assert prefixes == [
        "AWSLogs/o-abc123/222222222222/CloudTrail/us-east-1/2026/02/20/",
        "AWSLogs/o-abc123/222222222222/CloudTrail/eu-west-1/2026/02/20/",
    ]


def test_build_prefixes_rejects_reversed_range():
    with pytest.raises(ValueError):
        fetch_trails.build_prefixes("1", ["us-east-1"], date(2026, 2, 2), date(2026, 2, 1))


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------


def test_download_skips_existing_files(tmp_path):
    present_key = "AWSLogs/111/CloudTrail/us-east-1/2026/02/20/present.json.gz"
    missing_key = "AWSLogs/111/CloudTrail/us-east-1/2026/02/20/missing.json.gz"
    present = tmp_path / present_key
    present.parent.mkdir(parents=True)
    present.write_bytes(b"12345")

    mock_s3 = make_s3_client([
        {"Contents": [
            {"Key": present_key, "Size": 5},
            {"Key": missing_key, "Size": 42},
        ]}
    ])

    result = fetch_trails.download_trail_files(
        "trail-bucket", ["AWSLogs/111/CloudTrail/us-east-1/2026/02/20/"],
        tmp_path, s3_client=mock_s3, max_workers=2,
    )

    assert result["listed"] == 2
    assert result["skipped"] == 1
    assert result["downloaded"] == 1
    assert result["failed"] == 0
    mock_s3.download_file.assert_called_once_with(
        "trail-bucket", missing_key, str(tmp_path / missing_key)
    )


def test_download_failure_is_recorded(tmp_path):
    key = "AWSLogs/111/CloudTrail/us-east-1/2026/02/20/a.json.gz"
    mock_s3 = make_s3_client([{"Contents": [{"Key": key, "Size": 10}]}])
    mock_s3.download_file.side_effect = Exception("AccessDenied")

    result = fetch_trails.download_trail_files(
        "trail-bucket", ["AWSLogs/111/"], tmp_path, s3_client=mock_s3
    )

    assert result["failed"] == 1
    assert result["downloaded"] == 0
    assert result["errors"][0]["source"] == key


def test_listing_failure_is_recorded(tmp_path):
    mock_s3 = MagicMock()
    mock_paginator = MagicMock()
    mock_paginator.paginate.side_effect = Exception("NoSuchBucket")
    mock_s3.get_paginator.return_value = mock_paginator

    result = fetch_trails.download_trail_files(
        "missing-bucket", ["AWSLogs/111/"], tmp_path, s3_client=mock_s3
    )

    assert result["listed"] == 0
    assert result["errors"] == [{"source": "AWSLogs/111/", "error": "NoSuchBucket"}]
    mock_s3.download_file.assert_not_called()


def test_empty_prefix(tmp_path):
    mock_s3 = make_s3_client([{}])

    result = fetch_trails.download_trail_files(
        "trail-bucket", ["AWSLogs/111/"], tmp_path, s3_client=mock_s3
    )

    assert result == {"listed": 0, "downloaded": 0, "skipped": 0, "failed": 0, "errors": []}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def test_main_handles_keyboard_interrupt():
    with patch("fetch_trails._main", side_effect=KeyboardInterrupt), \
            pytest.raises(SystemExit) as exc:
        fetch_trails.main()
    assert exc.value.code == 0
