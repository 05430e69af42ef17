from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError
from pydantic import ValidationError

from cumulus.constants import (
    ABORT_MULTIPART_DAYS,
    BUCKET_WAIT_INTERVAL,
    BUCKET_WAIT_TIMEOUT,
    DEFAULT_LOCK_TABLE,
    MANAGED_BY,
    STATE_PREFIX,
    STATE_VERSION_RETENTION_DAYS,
    TABLE_WAIT_INTERVAL,
    TABLE_WAIT_TIMEOUT,
)
from cumulus.errors import (
    AWS_ERRORS,
    LockHeldError,
    StateCorruptedError,
    StateNotFoundError,
    from_client_error,
    is_error_code,
)
from cumulus.logger import logger
from cumulus.state.base import DEFAULT_OPERATION, StateBackend
from cumulus.state.types import BackendInfo, ClusterState, LockInfo
from cumulus.utils import utc_now
from cumulus.waiter import wait_until

# S3 has no LocationConstraint for its default region
S3_DEFAULT_REGION = "us-east-1"

BUCKET_MISSING_CODES = ("404", "NoSuchBucket", "NotFound")
KEY_MISSING_CODES = ("404", "NoSuchKey", "NotFound")

LOCK_KEY_ATTRIBUTE = "LockID"


class S3Backend(StateBackend):
    """
    Stores cluster states in a versioned, encrypted S3 bucket and guards them
    with lock records in a DynamoDB table.

    The lock record is written with `attribute_not_exists(LockID)`, so DynamoDB
    itself guarantees that at most one caller holds the lock of a cluster.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str,
        lock_table_name: Optional[str] = None,
        prefix: str = STATE_PREFIX,
        session: Optional[boto3.Session] = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.lock_table_name = lock_table_name or DEFAULT_LOCK_TABLE
        self.prefix = prefix
        self.session = session or boto3.Session(region_name=region)
        self.s3 = self.session.client(
            "s3", region_name=region, config=Config(signature_version="s3v4")
        )
        self.dynamodb = self.session.client("dynamodb", region_name=region)

    @property
    def location(self) -> str:
        return f"s3://{self.bucket_name}/{self.prefix}"

    def initialize(self) -> None:
        """
        Makes sure the state bucket and the lock table exist.

        Missing resources are created and configured. Existing resources are
        only checked, and configuration drift is logged as a warning.

        Raises:
            ProviderFatalError: If the bucket or the table can not be created or
                reached.
            WaitTimeoutError: If a new bucket or table does not show up in time.
        """
        self._ensure_bucket()
        self._ensure_lock_table()

    def _bucket_exists(self) -> bool:
        try:
            self.s3.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            if is_error_code(e, *BUCKET_MISSING_CODES):
                return False
            raise from_client_error(
                e, f"Failed to reach state bucket {self.bucket_name}"
            ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to reach state bucket {self.bucket_name}"
            ) from e

    def _ensure_bucket(self) -> None:
        if self._bucket_exists():
            logger.debug(f"State bucket {self.bucket_name} already exists")
            self._validate_bucket_config()
            return

        logger.info(f"Creating state bucket {self.bucket_name}")
        params: Dict[str, Any] = {"Bucket": self.bucket_name}
        if self.region != S3_DEFAULT_REGION:
            params["CreateBucketConfiguration"] = {
                "LocationConstraint": self.region
            }
        try:
            self.s3.create_bucket(**params)
        except ClientError as e:
            if not is_error_code(e, "BucketAlreadyOwnedByYou"):
                raise from_client_error(
                    e, f"Failed to create state bucket {self.bucket_name}"
                ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to create state bucket {self.bucket_name}"
            ) from e

        wait_until(
            self._bucket_exists,
            BUCKET_WAIT_INTERVAL,
            BUCKET_WAIT_TIMEOUT,
            f"state bucket {self.bucket_name}",
        )
        self._configure_bucket()

    def _configure_bucket(self) -> None:
        try:
            self.s3.put_public_access_block(
                Bucket=self.bucket_name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
            self.s3.put_bucket_versioning(
                Bucket=self.bucket_name,
                VersioningConfiguration={"Status": "Enabled"},
            )
            self.s3.put_bucket_encryption(
                Bucket=self.bucket_name,
                ServerSideEncryptionConfiguration={
                    "Rules": [
                        {
                            "ApplyServerSideEncryptionByDefault": {
                                "SSEAlgorithm": "AES256"
                            },
                            "BucketKeyEnabled": True,
                        }
                    ]
                },
            )
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to configure state bucket {self.bucket_name}"
            ) from e

        try:
            self.s3.put_bucket_lifecycle_configuration(
                Bucket=self.bucket_name,
                LifecycleConfiguration={
                    "Rules": [
                        {
                            "ID": "expire-old-versions",
                            "Status": "Enabled",
                            "Filter": {"Prefix": self.prefix},
                            "NoncurrentVersionExpiration": {
                                "NoncurrentDays": STATE_VERSION_RETENTION_DAYS
                            },
                        },
                        {
                            "ID": "cleanup-incomplete-uploads",
                            "Status": "Enabled",
                            "Filter": {"Prefix": ""},
                            "AbortIncompleteMultipartUpload": {
                                "DaysAfterInitiation": ABORT_MULTIPART_DAYS
                            },
                        },
                    ]
                },
            )
        except AWS_ERRORS as e:
            logger.warning(f"Failed to set lifecycle policy on {self.bucket_name}: {e}")

        try:
            self.s3.put_bucket_tagging(
                Bucket=self.bucket_name,
                Tagging={
                    "TagSet": [
                        {"Key": "ManagedBy", "Value": MANAGED_BY},
                        {"Key": "Purpose", "Value": "cluster-state-storage"},
                        {"Key": "CreatedAt", "Value": utc_now().isoformat()},
                    ]
                },
            )
        except AWS_ERRORS as e:
            logger.warning(f"Failed to tag state bucket {self.bucket_name}: {e}")

        logger.info(f"State bucket {self.bucket_name} is ready")

    def _validate_bucket_config(self) -> None:
        try:
            versioning = self.s3.get_bucket_versioning(Bucket=self.bucket_name)
            if versioning.get("Status") != "Enabled":
                logger.warning(
                    f"Versioning is not enabled on state bucket {self.bucket_name}"
                )
        except AWS_ERRORS as e:
            logger.warning(f"Could not check versioning of {self.bucket_name}: {e}")

        try:
            self.s3.get_bucket_encryption(Bucket=self.bucket_name)
        except AWS_ERRORS as e:
            logger.warning(
                f"Could not verify encryption of state bucket {self.bucket_name}: {e}"
            )

    def _table_status(self) -> Optional[str]:
        try:
            table = self.dynamodb.describe_table(TableName=self.lock_table_name)
        except ClientError as e:
            if is_error_code(e, "ResourceNotFoundException"):
                return None
            raise from_client_error(
                e, f"Failed to reach lock table {self.lock_table_name}"
            ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to reach lock table {self.lock_table_name}"
            ) from e
        return table["Table"]["TableStatus"]

    def _ensure_lock_table(self) -> None:
        status = self._table_status()
        if status is not None:
            logger.debug(f"Lock table {self.lock_table_name} already exists")
            if status != "ACTIVE":
                self._wait_for_table()
            return

        logger.info(f"Creating lock table {self.lock_table_name}")
        try:
            self.dynamodb.create_table(
                TableName=self.lock_table_name,
                AttributeDefinitions=[
                    {"AttributeName": LOCK_KEY_ATTRIBUTE, "AttributeType": "S"}
                ],
                KeySchema=[{"AttributeName": LOCK_KEY_ATTRIBUTE, "KeyType": "HASH"}],
                BillingMode="PAY_PER_REQUEST",
                SSESpecification={"Enabled": True},
                Tags=[
                    {"Key": "ManagedBy", "Value": MANAGED_BY},
                    {"Key": "Purpose", "Value": "cluster-state-locking"},
                ],
            )
        except ClientError as e:
            # Somebody else is creating the same table
            if not is_error_code(e, "ResourceInUseException"):
                raise from_client_error(
                    e, f"Failed to create lock table {self.lock_table_name}"
                ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to create lock table {self.lock_table_name}"
            ) from e

        self._wait_for_table()

        try:
            self.dynamodb.update_continuous_backups(
                TableName=self.lock_table_name,
                PointInTimeRecoverySpecification={"PointInTimeRecoveryEnabled": True},
            )
        except AWS_ERRORS as e:
            logger.warning(
                f"Failed to enable point-in-time recovery on {self.lock_table_name}: {e}"
            )

        logger.info(f"Lock table {self.lock_table_name} is ready")

    def _wait_for_table(self) -> None:
        wait_until(
            lambda: self._table_status() == "ACTIVE",
            TABLE_WAIT_INTERVAL,
            TABLE_WAIT_TIMEOUT,
            f"lock table {self.lock_table_name}",
        )

    def save(self, cluster_name: str, state: ClusterState) -> None:
        key = self.state_key(cluster_name)
        state.updatedAt = utc_now()
        try:
            self.s3.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=state.model_dump_json(indent=2).encode("utf-8"),
                ContentType="application/json",
                ServerSideEncryption="AES256",
                Metadata={
                    "cluster": cluster_name,
                    "timestamp": str(int(time.time())),
                },
            )
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to save state of cluster {cluster_name}"
            ) from e
        logger.debug(f"State of cluster {cluster_name} saved to {self.location}")

    def load(self, cluster_name: str) -> ClusterState:
        key = self.state_key(cluster_name)
        try:
            response = self.s3.get_object(Bucket=self.bucket_name, Key=key)
            body = response["Body"].read()
        except ClientError as e:
            if is_error_code(e, *KEY_MISSING_CODES):
                raise StateNotFoundError(
                    cluster_name, f"s3://{self.bucket_name}/{key}"
                ) from e
            raise from_client_error(
                e, f"Failed to load state of cluster {cluster_name}"
            ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to load state of cluster {cluster_name}"
            ) from e

        try:
            return ClusterState.model_validate_json(body)
        except ValidationError as e:
            raise StateCorruptedError(cluster_name, str(e)) from e

    def delete(self, cluster_name: str) -> None:
        try:
            self.s3.delete_object(
                Bucket=self.bucket_name, Key=self.state_key(cluster_name)
            )
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to delete state of cluster {cluster_name}"
            ) from e
        logger.debug(f"State of cluster {cluster_name} deleted from {self.location}")

    def list(self) -> List[str]:
        names = []
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
                for obj in page.get("Contents", []):
                    name = self.cluster_name_from_key(obj["Key"])
                    if name:
                        names.append(name)
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to list cluster states in {self.location}"
            ) from e
        return sorted(names)

    def exists(self, cluster_name: str) -> bool:
        try:
            self.s3.head_object(
                Bucket=self.bucket_name, Key=self.state_key(cluster_name)
            )
            return True
        except ClientError as e:
            if is_error_code(e, *KEY_MISSING_CODES):
                return False
            raise from_client_error(
                e, f"Failed to check state of cluster {cluster_name}"
            ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to check state of cluster {cluster_name}"
            ) from e

    def lock(self, cluster_name: str, operation: str = DEFAULT_OPERATION) -> LockInfo:
        """
        Acquires the lock of a cluster. Never waits and never retries.

        Args:
            cluster_name (str): The name of the cluster.
            operation (str): The operation taking the lock, kept for diagnostics.

        Returns:
            LockInfo: The lock record. Pass it to `unlock` to release the lock.

        Raises:
            LockHeldError: If another caller holds the lock.
        """
        lock = self.new_lock_info(cluster_name, operation)
        try:
            self.dynamodb.put_item(
                TableName=self.lock_table_name,
                Item={
                    LOCK_KEY_ATTRIBUTE: {"S": lock.id},
                    "Info": {"S": lock.model_dump_json()},
                    "Token": {"S": lock.token},
                    "CreatedAt": {"N": str(int(lock.createdAt.timestamp()))},
                },
                ConditionExpression=f"attribute_not_exists({LOCK_KEY_ATTRIBUTE})",
            )
        except ClientError as e:
            if is_error_code(e, "ConditionalCheckFailedException"):
                raise LockHeldError(cluster_name, self._describe_holder(lock.id)) from e
            raise from_client_error(
                e, f"Failed to acquire lock of cluster {cluster_name}"
            ) from e
        except AWS_ERRORS as e:
            raise from_client_error(
                e, f"Failed to acquire lock of cluster {cluster_name}"
            ) from e
        return lock

    def _describe_holder(self, lock_id: str) -> Optional[str]:
        try:
            item = self.dynamodb.get_item(
                TableName=self.lock_table_name,
                Key={LOCK_KEY_ATTRIBUTE: {"S": lock_id}},
            ).get("Item")
            if not item or "Info" not in item:
                return None
            holder = LockInfo.model_validate_json(item["Info"]["S"])
        except (*AWS_ERRORS, ValidationError) as e:
            logger.debug(f"Could not read lock holder of {lock_id}: {e}")
            return None
        return (
            f"{holder.operation} by {holder.owner} since {holder.createdAt.isoformat()}"
        )

    def unlock(self, cluster_name: str, lock: Optional[LockInfo] = None) -> None:
        lock_id = self.lock_id(cluster_name)
        params: Dict[str, Any] = {
            "TableName": self.lock_table_name,
            "Key": {LOCK_KEY_ATTRIBUTE: {"S": lock_id}},
        }
        if lock is not None:
            params["ConditionExpression"] = "#token = :token"
            params["ExpressionAttributeNames"] = {"#token": "Token"}
            params["ExpressionAttributeValues"] = {":token": {"S": lock.token}}

        try:
            self.dynamodb.delete_item(**params)
        except ClientError as e:
            if is_error_code(e, "ConditionalCheckFailedException"):
                logger.warning(
                    f"Lock {lock_id} is no longer owned by this operation, leaving it in place"
                )
                return
            logger.warning(f"Failed to release lock {lock_id}: {e}")
            return
        except AWS_ERRORS as e:
            logger.warning(f"Failed to release lock {lock_id}: {e}")
            return
        logger.debug(f"Lock released: {lock_id}")

    def get_info(self) -> BackendInfo:
        return BackendInfo(
            type="s3",
            location=self.location,
            region=self.region,
            encrypted=True,
            versioningEnabled=True,
            lockingEnabled=True,
            metadata={
                "bucket": self.bucket_name,
                "lockTable": self.lock_table_name,
                "prefix": self.prefix,
            },
        )
