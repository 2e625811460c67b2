"""
S3 storage service for composited artifacts.

Handles artifact uploads and presigned URL generation. Finished videos are
published under jobs/{job_id}/ and handed out as 7-day presigned URLs; the
key is kept on the job so the URL can be reissued.
"""

import boto3
from botocore.exceptions import ClientError
from typing import Optional
import structlog

from config import settings
from pipeline.error_handler import ErrorCode, PipelineError, TransientInfraError

logger = structlog.get_logger()

# S3 error codes worth retrying
TRANSIENT_S3_ERRORS = {"SlowDown", "ServiceUnavailable", "InternalError", "RequestTimeout", "Throttling"}


def _storage_error(action: str, s3_key: str, error: ClientError) -> PipelineError:
    code = error.response.get("Error", {}).get("Code", "")
    message = f"Failed to {action} {s3_key}: {error}"
    if code in TRANSIENT_S3_ERRORS:
        return TransientInfraError(message, {"s3_key": s3_key, "aws_code": code})
    return PipelineError(ErrorCode.STORAGE_ERROR, message, {"s3_key": s3_key, "aws_code": code})


class S3StorageService:
    """
    Service for managing S3 artifact operations.
    """

    def __init__(self, client=None, bucket_name: str = None):
        """Initialize S3 client."""
        self.s3_client = client or boto3.client(
            's3',
            region_name=settings.AWS_REGION,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None
        )
        self.bucket_name = bucket_name or settings.STORAGE_BUCKET

        logger.info(
            "s3_storage_initialized",
            bucket=self.bucket_name,
            region=settings.AWS_REGION
        )

    def upload_file_from_path(
        self,
        file_path: str,
        s3_key: str,
        content_type: str = None
    ) -> str:
        """
        Upload file from filesystem path to S3.

        Args:
            file_path: Path to local file
            s3_key: S3 object key
            content_type: Optional MIME type

        Returns:
            S3 key of uploaded file
        """
        extra_args = {}
        if content_type:
            extra_args['ContentType'] = content_type

        try:
            self.s3_client.upload_file(
                file_path,
                self.bucket_name,
                s3_key,
                ExtraArgs=extra_args
            )
        except ClientError as e:
            logger.error(
                "s3_upload_failed",
                s3_key=s3_key,
                file_path=file_path,
                error=str(e)
            )
            raise _storage_error("upload", s3_key, e) from e

        logger.info(
            "s3_file_uploaded",
            bucket=self.bucket_name,
            s3_key=s3_key,
            content_type=content_type
        )
        return s3_key

    def generate_presigned_url(
        self,
        s3_key: str,
        expiry: int = None
    ) -> str:
        """
        Generate presigned URL for S3 object.

        Args:
            s3_key: S3 object key
            expiry: URL expiration in seconds (default: 7 days from settings)

        Returns:
            Presigned URL string
        """
        if expiry is None:
            expiry = settings.ARTIFACT_URL_EXPIRY

        try:
            url = self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': self.bucket_name,
                    'Key': s3_key
                },
                ExpiresIn=expiry
            )
        except ClientError as e:
            logger.error(
                "s3_presigned_url_failed",
                s3_key=s3_key,
                error=str(e)
            )
            raise _storage_error("sign", s3_key, e) from e

        logger.info(
            "s3_presigned_url_generated",
            s3_key=s3_key,
            expiry_seconds=expiry
        )
        return url


def generate_s3_key(job_id: str, file_type: str, filename: str = None) -> str:
    """
    Generate standardized S3 key for job files.

    Examples:
        >>> generate_s3_key("123", "final_video")
        'jobs/123/final.mp4'
        >>> generate_s3_key("123", "scene_video", "scene_001.mp4")
        'jobs/123/scenes/scene_001.mp4'
    """
    base_path = f"jobs/{job_id}"

    file_type_map = {
        "scene_video": (filename or "scene.mp4", f"{base_path}/scenes"),
        "final_video": ("final.mp4", base_path),
    }

    if file_type in file_type_map:
        filename, path = file_type_map[file_type]
        return f"{path}/{filename}"

    if filename:
        return f"{base_path}/{filename}"
    return f"{base_path}/{file_type}"


def validate_s3_key(s3_key: Optional[str], field_name: str = "S3 key") -> Optional[str]:
    """
    Validate that an S3 key is not a URL.

    Keys are stored on the job so presigned URLs can be reissued; a stored
    URL would expire with its signature.

    Raises:
        ValueError: If s3_key appears to be a URL instead of a key
    """
    if s3_key is None:
        return None

    s3_key = s3_key.strip()

    if s3_key.startswith(("http://", "https://", "s3://")):
        raise ValueError(
            f"{field_name} must be an S3 key (e.g., 'jobs/{{id}}/final.mp4'), "
            f"not a URL. Received: {s3_key[:50]}..."
        )

    if "?" in s3_key and ("X-Amz-" in s3_key or "AWSAccessKeyId" in s3_key):
        raise ValueError(
            f"{field_name} must be an S3 key, not a presigned URL. "
            f"Presigned URLs contain query parameters and expire. Received: {s3_key[:50]}..."
        )

    return s3_key


# Singleton instance
_s3_storage_service: Optional[S3StorageService] = None


def get_s3_storage_service() -> S3StorageService:
    """
    Get singleton S3 storage service instance.
    """
    global _s3_storage_service
    if _s3_storage_service is None:
        _s3_storage_service = S3StorageService()
    return _s3_storage_service
