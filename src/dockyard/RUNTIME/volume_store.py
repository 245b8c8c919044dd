"""
Directory-backed volumes and mounts for the process runtime.
"""
import os
import shutil
from typing import List, Optional

from ..errors import RuntimeCallError
from ..MODELS.runtime_state import MountBinding
from ..UTILS.logging import get_logger

log = get_logger(__name__)


class VolumeStore:
    """
    Stores every volume as a directory and maps mounts into a container
    root with symlinks.
    """
    def __init__(self, volumes_root: str):
        """
        :param volumes_root: Directory holding one sub-directory per volume.
        """
        self.volumes_root = os.path.abspath(volumes_root)
        os.makedirs(self.volumes_root, exist_ok=True)

    def path(self, name: str) -> str:
        """
        Resolves the directory of a volume.

        :param name: The volume name.
        :return: The absolute path of its data.
        """
        return os.path.join(self.volumes_root, name)

    def create(self, name: str) -> str:
        path = self.path(name)
        os.makedirs(path, exist_ok=True)
        return path

    def remove(self, name: str):
        shutil.rmtree(self.path(name), ignore_errors=True)

    def mount_all(self, mounts: List[MountBinding], root: str):
        """
        Links every mount target below ``root`` to its volume or host path.

        :param mounts: Resolved mounts of a container.
        :param root: The container root directory.
        :raises RuntimeCallError: If a mount cannot be prepared.
        """
        for mount in mounts:
            source = self.path(mount.volume.name) if mount.volume else mount.host_path
            target = self.resolve_target(mount.target, root)
            if not source:
                raise RuntimeCallError(f"mount {mount.target} has no source")
            try:
                os.makedirs(source, exist_ok=True)
                target_parent = os.path.dirname(target)
                if target_parent:
                    os.makedirs(target_parent, exist_ok=True)

                if os.path.islink(target):
                    if os.path.realpath(target) == os.path.realpath(source):
                        continue
                    os.unlink(target)
                elif os.path.isdir(target):
                    shutil.rmtree(target)
                elif os.path.exists(target):
                    os.remove(target)
                os.symlink(source, target, target_is_directory=True)
            except OSError as e:
                raise RuntimeCallError(f"cannot mount {source} at {mount.target}: {e}") from e
            log.debug("volume_mounted", source=source, target=target, read_only=mount.read_only)

    @staticmethod
    def resolve_target(target: str, root: Optional[str]) -> str:
        """
        Resolves a container path below the container root.

        :param target: The target path inside the "container".
        :param root: The container root directory.
        :return: The absolute host path.
        """
        return os.path.abspath(os.path.join(root or ".", target.lstrip('/\\')))
