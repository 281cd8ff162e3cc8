"""
Named volume management: creation, attachment to containers and removal.

Ownership policy: the first container attached to a fresh volume decides its
owner. The manager chowns the volume's storage root recursively to that
container's uid/gid once and records it. Later attaches by containers with
other ids do not re-chown existing data unless the manager is configured
with the "always" re-ownership policy.
"""
import logging
import os
import re
import shutil
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import DuplicateVolumeError, VolumeInUseError, VolumeNotFoundError
from ..MODELS.run_config import ContainerRunConfig, Volume, VolumeAttachment
from ..STORE.persistence import load_json, save_json
from ..UTILS.keyed_locks import KeyedLocks

logger = logging.getLogger(__name__)

VOLUME_NAME = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
REOWN_POLICIES = ("first-attach", "always")


class VolumeManager:
    """
    Manages named volumes stored below a volumes root directory.
    """
    def __init__(self,
                 state_dir: Optional[str] = None,
                 reown_policy: str = "first-attach",
                 apply_ownership: bool = True):
        """
        Initializes the volume manager.

        :param state_dir: Engine state directory. Volumes live in its ``volumes``
            subdirectory; without one they live in a temporary directory and
            records are kept in memory.
        :param reown_policy: "first-attach" or "always".
        :param apply_ownership: Whether to chown volume data on the host.
        """
        if reown_policy not in REOWN_POLICIES:
            raise ValueError(f"Unknown re-ownership policy: {reown_policy}")
        self.reown_policy = reown_policy
        self.apply_ownership = apply_ownership
        self._lock = threading.RLock()
        self._volume_locks = KeyedLocks()
        self._volumes: Dict[str, Volume] = {}
        self._tempdir: Optional[tempfile.TemporaryDirectory] = None

        if state_dir:
            self.volumes_root = Path(state_dir).resolve() / "volumes"
            self.records_file: Optional[Path] = self.volumes_root / "volumes.json"
        else:
            self._tempdir = tempfile.TemporaryDirectory(prefix="kiln-volumes-")
            self.volumes_root = Path(self._tempdir.name)
            self.records_file = None
        self.volumes_root.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        if not self.records_file:
            return
        for name, record in load_json(self.records_file, {}).items():
            # attachments belong to runs that ended with the previous process
            record["attachments"] = []
            self._volumes[name] = Volume.model_validate(record)
        logger.debug("Loaded %d volumes", len(self._volumes))

    def _save(self) -> None:
        if self.records_file:
            with self._lock:
                records = {name: volume.model_dump(mode="json", exclude={"attachments"})
                           for name, volume in self._volumes.items()}
            save_json(self.records_file, records)

    def _find(self, name_or_id: str) -> Volume:
        with self._lock:
            volume = self._volumes.get(name_or_id)
            if volume is None:
                matches = [v for v in self._volumes.values() if v.id == name_or_id]
                volume = matches[0] if matches else None
        if volume is None:
            raise VolumeNotFoundError(name_or_id)
        return volume

    def _ensure_current(self, volume: Volume) -> None:
        """Raises VolumeNotFoundError if ``volume`` was removed after it was looked up."""
        with self._lock:
            current = self._volumes.get(volume.name)
        if current is not volume:
            raise VolumeNotFoundError(volume.name)

    def create(self, name: str) -> Volume:
        """
        Creates a named volume with an empty storage root.

        :param name: Volume name.
        :return: The new volume; ``id`` identifies it from then on.
        :raises DuplicateVolumeError: If the name is taken.
        """
        if not VOLUME_NAME.match(name):
            raise ValueError(f"Invalid volume name '{name}'")
        with self._lock:
            if name in self._volumes:
                raise DuplicateVolumeError(name)
            storage_root = self.volumes_root / name / "_data"
            storage_root.mkdir(parents=True, exist_ok=True)
            volume = Volume(
                id=uuid.uuid4().hex,
                name=name,
                storage_root=str(storage_root),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self._volumes[name] = volume
        self._save()
        logger.info("Created volume %s at %s", name, storage_root)
        return volume.model_copy(deep=True)

    def get(self, name_or_id: str) -> Volume:
        """Snapshot of a volume record, looked up by name or id."""
        volume = self._find(name_or_id)
        with self._lock:
            return volume.model_copy(deep=True)

    def list_volumes(self) -> List[Volume]:
        with self._lock:
            return [self._volumes[name].model_copy(deep=True) for name in sorted(self._volumes)]

    def host_path(self, name_or_id: str) -> Path:
        return Path(self._find(name_or_id).storage_root)

    def attach(self,
               name_or_id: str,
               config: ContainerRunConfig,
               mount_path: str,
               uid: int = 0,
               gid: int = 0) -> VolumeAttachment:
        """
        Attaches a volume to the container described by ``config``.

        The first attach of a fresh volume applies ``uid``/``gid`` to its data.

        :param name_or_id: Volume name or id.
        :param config: Run configuration of the container.
        :param mount_path: Absolute path inside the container.
        :param uid: Container's run-as uid.
        :param gid: Container's run-as gid.
        :return: The recorded attachment.
        """
        volume = self._find(name_or_id)
        with self._volume_locks.hold(volume.id):
            self._ensure_current(volume)
            for attachment in volume.attachments:
                if attachment.container_id == config.container_id and attachment.mount_path == mount_path:
                    return attachment.model_copy()

            if not volume.ownership_applied:
                self._set_owner(volume, uid, gid)
            elif (volume.owner_uid, volume.owner_gid) != (uid, gid):
                if self.reown_policy == "always":
                    self._set_owner(volume, uid, gid)
                else:
                    logger.info(
                        "Volume %s stays owned by %d:%d; container %s runs as %d:%d",
                        volume.name, volume.owner_uid, volume.owner_gid, config.container_id, uid, gid,
                    )

            attachment = VolumeAttachment(
                container_id=config.container_id, mount_path=mount_path, uid=uid, gid=gid
            )
            with self._lock:
                volume.attachments.append(attachment)
            self._save()
            logger.debug("Attached volume %s to %s at %s", volume.name, config.container_id, mount_path)
            return attachment.model_copy()

    def detach(self, name_or_id: str, container_id: str) -> int:
        """
        Detaches every attachment of ``container_id``. Data is never deleted.

        :return: Number of attachments removed.
        """
        volume = self._find(name_or_id)
        with self._volume_locks.hold(volume.id):
            with self._lock:
                before = len(volume.attachments)
                volume.attachments = [a for a in volume.attachments if a.container_id != container_id]
                removed = before - len(volume.attachments)
            if removed:
                self._save()
                logger.debug("Detached volume %s from %s", volume.name, container_id)
            return removed

    def remove(self, name_or_id: str) -> None:
        """
        Removes a volume and its data.

        :raises VolumeInUseError: If a container is still attached.
        """
        volume = self._find(name_or_id)
        with self._volume_locks.hold(volume.id):
            self._ensure_current(volume)
            if volume.in_use:
                raise VolumeInUseError(volume.name, {a.container_id for a in volume.attachments})
            with self._lock:
                del self._volumes[volume.name]
            shutil.rmtree(self.volumes_root / volume.name, ignore_errors=False)
        self._save()
        logger.info("Removed volume %s", volume.name)

    def prune(self) -> List[str]:
        """Removes every volume without a live attachment."""
        removed = []
        for volume in self.list_volumes():
            if not volume.in_use:
                try:
                    self.remove(volume.name)
                except VolumeInUseError:
                    # attached since listing
                    continue
                removed.append(volume.name)
        return removed

    def close(self) -> None:
        """Deletes the temporary storage of a manager without a state directory."""
        if self._tempdir is not None:
            self._tempdir.cleanup()
            self._tempdir = None

    def _set_owner(self, volume: Volume, uid: int, gid: int) -> None:
        if self.apply_ownership:
            self._chown_tree(Path(volume.storage_root), uid, gid)
        volume.owner_uid = uid
        volume.owner_gid = gid
        logger.info("Volume %s owned by %d:%d", volume.name, uid, gid)

    @staticmethod
    def _chown_tree(root: Path, uid: int, gid: int) -> None:
        if not hasattr(os, "chown"):
            logger.warning("Cannot change ownership on this platform; volume data left as is")
            return
        try:
            os.chown(root, uid, gid)
            for current, dirnames, filenames in os.walk(root):
                for name in dirnames + filenames:
                    os.chown(os.path.join(current, name), uid, gid, follow_symlinks=False)
        except PermissionError as e:
            logger.warning("Could not chown %s to %d:%d (%s); ownership recorded only",
                           root, uid, gid, e)
