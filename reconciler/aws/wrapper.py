import logging
from datetime import datetime, timezone

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError
from retry import retry

RETRIES_NUMBER = 3
REGION = 'us-east-1'


class AWSWrapper:
    """
    Wrapper class for AWS operations with retry capabilities
    """

    def __init__(self, aws_access_key_id: str = None, aws_secret_access_key: str = None,
                 aws_session_token: str = None, sso_profile_name: str = None,
                 region_name: str = REGION):
        self._region_name = region_name
        self._clients = {}
        self._session = self._create_boto_session(aws_access_key_id, aws_secret_access_key,
                                                  aws_session_token, sso_profile_name)

    @property
    def region_name(self) -> str:
        return self._region_name

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def _create_boto_session(self, aws_access_key_id: str = None, aws_secret_access_key: str = None,
                             aws_session_token: str = None, sso_profile_name: str = None):
        logging.debug("Creating boto3 session via " + ("SSO profile name" if sso_profile_name else "AWS access key"))
        return boto3.session.Session(profile_name=sso_profile_name, region_name=self._region_name) \
            if sso_profile_name else boto3.session.Session(aws_access_key_id, aws_secret_access_key,
                                                           aws_session_token, region_name=self._region_name)

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def create_aws_client(self, service_name: str, region_name: str = None, config=None):
        """
        Create a boto3 client with retry capability.

        Clients created with the default configuration are cached per service and region.

        Args:
            service_name: AWS service name ('autoscaling', 'cloudwatch', 's3', etc.)
            region_name: Optional AWS region override
            config: Optional boto3 configuration

        Returns:
            Boto3 client for the requested service
        """
        cache_key = (service_name, region_name)
        if config is None and cache_key in self._clients:
            return self._clients[cache_key]

        logging.debug(f'creating aws client for: {service_name}')
        default_config = Config(
            retries={'max_attempts': RETRIES_NUMBER, 'mode': 'standard'}
        )
        client = self._session.client(service_name=service_name, region_name=region_name,
                                      config=config or default_config)
        if config is None:
            self._clients[cache_key] = client
        return client

    @staticmethod
    def get_time_now() -> datetime:
        return datetime.now(timezone.utc)

    def get_file_content_from_s3_bucket(self, bucket_name: str, file_key: str) -> bytes:
        """
        Get file content from an S3 bucket.

        Args:
            bucket_name: S3 bucket name
            file_key: Path to the file in the bucket

        Returns:
            bytes: The file content
        """
        s3_client = self.create_aws_client('s3')
        response = s3_client.get_object(Bucket=bucket_name, Key=file_key)
        if not response:
            raise Exception(
                f"Didn't manage to get file's content of this file: {file_key}, from the bucket: {bucket_name}")
        return response['Body'].read()

    @retry(exceptions=ClientError, tries=RETRIES_NUMBER, delay=3)
    def upload_bytes_to_s3(self, bucket: str, file_path: str, content: bytes, metadata: dict = None):
        """
        Upload bytes directly to an S3 bucket

        Args:
            bucket: The name of the S3 bucket
            file_path: The path where the file should be stored in the bucket
            content: The bytes to upload
            metadata: Optional metadata for the S3 object
        """
        s3_client = self.create_aws_client('s3')

        try:
            s3_client.put_object(
                Bucket=bucket,
                Key=file_path,
                Body=content,
                Metadata=metadata or {}
            )
            logging.debug(f"Successfully uploaded bytes to s3://{bucket}/{file_path}")
        except ClientError as e:
            logging.error(f"Error uploading bytes to s3://{bucket}/{file_path}: {e}")
            raise
