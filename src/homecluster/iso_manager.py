"""Talos boot media download and verification."""

import hashlib
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from homecluster import console
from homecluster.config import RunConfig
from homecluster.errors import ImageError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def expected_digest(checksums: str, filename: str) -> Optional[str]:
    """Find the digest for filename in a sha256sum-style listing.

    Lines for other files are ignored, like ``sha256sum --ignore-missing``.
    """
    for line in checksums.splitlines():
        parts = line.split()
        if len(parts) != 2:
            continue
        digest, name = parts
        if name.lstrip("*") == filename:
            return digest.lower()
    return None


class IsoManager:
    """Downloads the Talos ISO into the VMs directory."""

    def __init__(
        self,
        config: RunConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.sleep = sleep

    def acquire(self) -> Path:
        """Ensure a verified ISO is present and return its path.

        An ISO already on disk is re-checked against the release checksums;
        factory images have none and are trusted as found.

        Raises:
            ImageError: If the image cannot be downloaded or fails verification
        """
        iso_path = self.config.iso_path
        if iso_path.is_file():
            console.success(f"ISO {iso_path.name} already present, skipping download")
            logger.info(f"ISO {iso_path} already exists locally. Skipping download.")
            if not self.config.schematic_file:
                self.verify(iso_path)
            return iso_path

        iso_path.parent.mkdir(parents=True, exist_ok=True)

        if self.config.schematic_file:
            url = self.factory_iso_url(self.create_schematic(self.config.schematic_file))
            self.download(url, iso_path)
            console.warning("Image Factory ISO has no published checksum; skipping verification")
            logger.warning(f"Checksum verification skipped for factory image {url}")
        else:
            self.download(self.config.iso_url, iso_path)
            self.verify(iso_path)

        os.chmod(iso_path, 0o644)
        console.success(f"ISO ready at {iso_path}")
        return iso_path

    def download(self, url: str, dest: Path) -> None:
        """Stream url to dest with bounded retries."""
        attempts = self.config.retry.iso_download_attempts
        partial = dest.with_name(dest.name + ".part")

        for attempt in range(1, attempts + 1):
            logger.info(f"Downloading {url} (attempt {attempt}/{attempts})")
            try:
                response = self.session.get(url, stream=True, timeout=60)
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
                partial.replace(dest)
                logger.info(f"✅ Downloaded {dest.name}")
                return
            except (requests.RequestException, OSError) as e:
                logger.warning(f"Download of {url} failed: {e}")
                if partial.exists():
                    partial.unlink()
                if attempt < attempts:
                    self.sleep(self.config.retry.iso_download_delay)

        raise ImageError(
            f"Failed to download {url} after {attempts} attempts",
            hint=f"curl -fL -o {dest} {url}",
        )

    def verify(self, iso_path: Path) -> None:
        """Compare the ISO's sha256 against the release checksum file.

        The ISO is removed whenever it cannot be verified, so an unchecked
        image is never found on disk by a later run.
        """
        url = self.config.checksum_url
        try:
            response = self.session.get(url, timeout=60)
            response.raise_for_status()
        except requests.RequestException as e:
            iso_path.unlink()
            raise ImageError(f"Could not fetch checksums from {url}: {e}")

        expected = expected_digest(response.text, iso_path.name)
        if expected is None:
            iso_path.unlink()
            raise ImageError(f"No checksum for {iso_path.name} in {url}")

        actual = sha256_of(iso_path)
        if actual != expected:
            iso_path.unlink()
            raise ImageError(
                f"Checksum mismatch for {iso_path.name}: expected {expected}, got {actual}",
                hint="Re-run without --skip-iso-download to fetch a fresh copy",
            )
        logger.info(f"✅ Checksum verified for {iso_path.name}")

    def create_schematic(self, schematic_file: Path) -> str:
        """Register a schematic with the Image Factory and return its id."""
        try:
            body = Path(schematic_file).read_bytes()
        except OSError as e:
            raise ImageError(f"Cannot read schematic {schematic_file}: {e}")

        url = f"{self.config.image_factory_url}/schematics"
        try:
            response = self.session.post(url, data=body, timeout=60)
            response.raise_for_status()
            schematic_id = response.json()["id"]
        except (requests.RequestException, ValueError, KeyError) as e:
            raise ImageError(f"Image Factory rejected schematic {schematic_file}: {e}")

        logger.info(f"Schematic id: {schematic_id}")
        return schematic_id

    def factory_iso_url(self, schematic_id: str) -> str:
        version = self.config.talos_version
        if version == "latest":
            raise ImageError(
                "TALOS_VERSION must name a release (e.g. v1.9.5) when using a schematic",
                hint="export TALOS_VERSION=v1.9.5",
            )
        return f"{self.config.image_factory_url}/image/{schematic_id}/{version}/{self.config.iso_name}"
