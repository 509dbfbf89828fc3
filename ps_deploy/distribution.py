# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Artifact Distribution Module

Mirrors the local source tree into the staging bucket so build instances can
fetch it. The mirror is content-addressed (local MD5 against the remote ETag),
so re-publishing an unchanged tree uploads nothing.
"""

import hashlib
import logging
import os
import shlex
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

from .exceptions import ConfigurationError, ProvisioningError
from .models import ArtifactReference, TransientEnvironment

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "epic-infrastructure"

EXCLUDED_DIRS = {".git", "node_modules", "__pycache__", ".pytest_cache"}
EXCLUDED_FILES = {".DS_Store"}
EXCLUDED_SUFFIXES = (".pyc", ".pyo")

# delete_objects accepts at most this many keys per call
_DELETE_BATCH = 1000


def file_md5(file_path: Path) -> str:
    """Hex MD5 of a file, read in blocks"""
    md5 = hashlib.md5()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            md5.update(block)
    return md5.hexdigest()


def local_manifest(source_tree: Path) -> Dict[str, Path]:
    """Relative POSIX key -> path for every file that should be mirrored"""
    manifest = {}
    for root, dirs, files in os.walk(source_tree):
        # Prune in place so os.walk does not descend into excluded dirs
        dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
        for name in sorted(files):
            if name in EXCLUDED_FILES or name.endswith(EXCLUDED_SUFFIXES):
                continue
            path = Path(root) / name
            manifest[path.relative_to(source_tree).as_posix()] = path
    return manifest


class ArtifactChannel:
    """Publishes a source tree to S3 and tells instances how to fetch it"""

    def __init__(self, region: str, session: Optional[boto3.Session] = None):
        """
        Initialize artifact channel

        Args:
            region: AWS region
            session: boto3 session (optional)
        """
        self.region = region
        self.session = session or boto3.Session(region_name=region)
        self.s3 = self.session.client("s3", region_name=region)

    def publish(
        self,
        source_tree: Path,
        env: TransientEnvironment,
        prefix: str = DEFAULT_PREFIX,
    ) -> ArtifactReference:
        """
        Mirror source_tree to s3://<staging bucket>/<prefix>/

        Args:
            source_tree: Local directory to publish
            env: Transient environment holding the staging bucket
            prefix: Key prefix inside the bucket

        Returns:
            ArtifactReference with upload/delete/unchanged counts
        """
        source_tree = Path(source_tree)
        if not source_tree.is_dir():
            raise ConfigurationError(
                f"Source tree {source_tree} does not exist or is not a directory"
            )

        bucket = env.staging_bucket
        prefix = prefix.strip("/")
        logger.info(f"Publishing {source_tree} to s3://{bucket}/{prefix}/")

        try:
            remote = self._remote_etags(bucket, prefix)
            local = local_manifest(source_tree)

            uploaded = unchanged = 0
            for relative_key, path in local.items():
                key = f"{prefix}/{relative_key}"
                if remote.get(key) == file_md5(path):
                    unchanged += 1
                    continue
                self.s3.upload_file(str(path), bucket, key)
                logger.debug(f"Uploaded {key}")
                uploaded += 1

            local_keys = {f"{prefix}/{k}" for k in local}
            stale = sorted(key for key in remote if key not in local_keys)
            for start in range(0, len(stale), _DELETE_BATCH):
                batch = stale[start : start + _DELETE_BATCH]
                self.s3.delete_objects(
                    Bucket=bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
        except ClientError as e:
            raise ProvisioningError(
                f"Failed to publish {source_tree} to s3://{bucket}/{prefix}/: {e}"
            ) from e

        reference = ArtifactReference(
            bucket=bucket,
            prefix=prefix,
            uploaded=uploaded,
            deleted=len(stale),
            unchanged=unchanged,
        )
        logger.info(
            f"Published {reference.uri}: {uploaded} uploaded, "
            f"{len(stale)} deleted, {unchanged} unchanged"
        )
        return reference

    def _remote_etags(self, bucket: str, prefix: str) -> Dict[str, str]:
        paginator = self.s3.get_paginator("list_objects_v2")
        etags = {}
        for page in paginator.paginate(Bucket=bucket, Prefix=f"{prefix}/"):
            for obj in page.get("Contents", []):
                etags[obj["Key"]] = obj.get("ETag", "").strip('"')
        return etags

    @staticmethod
    def fetch_command(
        reference: ArtifactReference, destination: str, region: str
    ) -> str:
        """Shell line an instance runs to pull the published tree"""
        return (
            f"aws s3 sync {shlex.quote(reference.uri)} {shlex.quote(destination)} "
            f"--delete --region {shlex.quote(region)}"
        )
