"""
Asset manager for handling file operations and cleanup.

Manages the per-job workspace used while compositing:
- Job directory structure creation
- Scene media downloads
- Cleanup of temporary resources
- File validation
"""

import asyncio
import aiofiles
import aiohttp
from pathlib import Path
from typing import Optional, List
import shutil
import logging

from pipeline.error_handler import TransientInfraError

logger = logging.getLogger(__name__)


class AssetManager:
    """
    Manages file operations for one compositing job.

    Each job gets its own isolated directory structure:
    {base_path}/{job_id}/
        scenes/     - Downloaded scene videos, named by scene order
        final/      - Encoded artifact

    Example:
        >>> am = AssetManager("job-123")
        >>> await am.create_job_directory()
        >>> path = await am.download_scene(0, "https://example.com/scene.mp4")
        >>> await am.cleanup()
    """

    def __init__(self, job_id: str, base_path: str = "/tmp/scene_jobs"):
        """
        Initialize asset manager for a specific job.

        Args:
            job_id: Unique identifier for the job being composited
            base_path: Base directory for all job workspaces
        """
        self.job_id = job_id
        self.base_path = Path(base_path)
        self.job_dir = self.base_path / job_id

        self.scenes_dir = self.job_dir / "scenes"
        self.final_dir = self.job_dir / "final"

    async def create_job_directory(self) -> None:
        """
        Create temporary directory structure for job.

        Example:
            >>> am = AssetManager("job-123")
            >>> await am.create_job_directory()
            >>> assert am.job_dir.exists()
        """
        try:
            self.job_dir.mkdir(parents=True, exist_ok=True)
            self.scenes_dir.mkdir(exist_ok=True)
            self.final_dir.mkdir(exist_ok=True)

            logger.info(f"Created job directory structure for {self.job_id}")
        except Exception as e:
            logger.error(f"Failed to create job directory for {self.job_id}: {e}")
            raise

    def _target_dir(self, subdir: Optional[str]) -> Path:
        if subdir == "scenes":
            return self.scenes_dir
        elif subdir == "final":
            return self.final_dir
        return self.job_dir

    async def download_file(
        self,
        url: str,
        filename: str,
        subdir: Optional[str] = None,
        timeout: int = 300
    ) -> str:
        """
        Download file from URL to job directory.

        Args:
            url: URL to download from
            filename: Local filename to save as
            subdir: Optional subdirectory (scenes/final)
            timeout: Download timeout in seconds (default: 300)

        Returns:
            Absolute path to downloaded file

        Raises:
            TransientInfraError: If the server answers with a 5xx status
            aiohttp.ClientError: If download fails otherwise
            asyncio.TimeoutError: If download times out
        """
        target_dir = self._target_dir(subdir)
        target_dir.mkdir(parents=True, exist_ok=True)

        file_path = target_dir / filename

        try:
            client_timeout = aiohttp.ClientTimeout(total=timeout)
            async with aiohttp.ClientSession(timeout=client_timeout) as session:
                async with session.get(url) as response:
                    if response.status >= 500:
                        raise TransientInfraError(
                            f"Media host returned {response.status} for {url}",
                            {"status": response.status}
                        )
                    response.raise_for_status()

                    # Download file in chunks to handle large files
                    async with aiofiles.open(file_path, 'wb') as f:
                        async for chunk in response.content.iter_chunked(8192):
                            await f.write(chunk)

            logger.info(f"Downloaded {filename} to {file_path}")
            return str(file_path)

        except (aiohttp.ClientError, asyncio.TimeoutError, TransientInfraError) as e:
            logger.error(f"Failed to download {url}: {e}")
            # Clean up partial download
            if file_path.exists():
                file_path.unlink()
            raise

    async def download_scene(self, order: int, url: str, timeout: int = 300) -> str:
        """
        Fetch one scene's media into scenes/.

        Local paths (already on disk) are used in place.
        """
        local = Path(url)
        if not url.startswith(("http://", "https://")) and local.exists():
            logger.info(f"Using local media for scene {order}: {local}")
            return str(local)

        return await self.download_file(url, f"scene_{order:03d}.mp4", "scenes", timeout)

    def final_output_path(self, filename: str = "final.mp4") -> str:
        self.final_dir.mkdir(parents=True, exist_ok=True)
        return str(self.final_dir / filename)

    async def list_files(self, subdir: Optional[str] = None) -> List[Path]:
        """List all files in a workspace directory."""
        target_dir = self._target_dir(subdir)

        if not target_dir.exists():
            return []

        return [f for f in target_dir.iterdir() if f.is_file()]

    async def validate_file(self, path: str, min_size: int = 100) -> bool:
        """
        Validate that file exists and meets size requirements.

        Args:
            path: Path to the file
            min_size: Minimum file size in bytes (default: 100)

        Returns:
            True if file is valid, False otherwise
        """
        file_path = Path(path)

        if not file_path.exists():
            logger.warning(f"File does not exist: {file_path}")
            return False

        file_size = file_path.stat().st_size
        if file_size < min_size:
            logger.warning(f"File too small ({file_size} bytes): {file_path}")
            return False

        return True

    async def cleanup(self) -> None:
        """
        Remove all temporary files for this job.

        Safe to call even if directory doesn't exist.
        """
        try:
            if self.job_dir.exists():
                await asyncio.to_thread(shutil.rmtree, self.job_dir)
                logger.info(f"Cleaned up job directory: {self.job_id}")
        except Exception as e:
            logger.error(f"Failed to cleanup job directory {self.job_id}: {e}")
            raise

    def __repr__(self) -> str:
        return f"AssetManager(job_id='{self.job_id}', path='{self.job_dir}')"
