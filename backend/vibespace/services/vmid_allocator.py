# backend/vibespace/services/vmid_allocator.py
"""
VMID allocation.

The hypervisor has no reservation API, so an id counts as used if it is in
the live inventory or in any local template/workspace record. Ids handed out
but not yet persisted are held in a process-wide reservation set. Every
Dramatiq message runs on its own event loop, so the set is guarded by a
thread lock and the critical section never awaits.
"""
import logging
import threading
from typing import Callable, Iterable, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from vibespace.services.errors import ProxmoxAPIError, RangeExhaustedError
from vibespace.services.proxmox_client import ProxmoxClient
from vibespace.services.settings_service import SettingsService
from vibespace.services.template_service import TemplateService

logger = logging.getLogger(__name__)


def find_free_vmid(used: Iterable[int], floor: int, ceiling: int) -> int:
    """Smallest id in [floor, ceiling] not in ``used``."""
    taken = set(used)
    for vmid in range(floor, ceiling + 1):
        if vmid not in taken:
            return vmid
    raise RangeExhaustedError(floor, ceiling)


class VmidReservations:
    """Ids handed out in this process that are not persisted yet."""

    def __init__(self):
        self.lock = threading.Lock()
        self._ids: Set[int] = set()

    def snapshot(self) -> Set[int]:
        return set(self._ids)

    def add(self, vmid: int) -> None:
        self._ids.add(vmid)

    def discard(self, vmid: int) -> None:
        with self.lock:
            self._ids.discard(vmid)

    def clear(self) -> None:
        with self.lock:
            self._ids.clear()


process_reservations = VmidReservations()


class VmidAllocator:
    """Hands out VMIDs that collide with nothing known at call time."""

    def __init__(
        self,
        client: ProxmoxClient,
        session_factory: sessionmaker,
        ceiling: Optional[int] = None,
        reservations: Optional[VmidReservations] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.ceiling = ceiling if ceiling is not None else client.config.vmid_max
        self.reservations = reservations or process_reservations

    async def _live_vmids(self) -> Set[int]:
        try:
            return {item.vmid for item in await self.client.list_lxc()}
        except ProxmoxAPIError as e:
            logger.warning(f"Could not fetch live container inventory, using local records only: {e}")
            return set()

    def _with_session(self, fn: Callable[[Session], object]):
        db = self.session_factory()
        try:
            return fn(db)
        finally:
            db.close()

    def _local_vmids(self) -> Set[int]:
        return self._with_session(lambda db: TemplateService(db).list_used_vmids())

    async def _allocate(self, for_workspace: bool) -> int:
        live = await self._live_vmids()

        with self.reservations.lock:
            vmid_config = self._with_session(lambda db: SettingsService(db).get_vmid_config())
            floor = vmid_config.starting_vmid + (1 if for_workspace else 0)
            used = live | self._local_vmids() | self.reservations.snapshot()
            vmid = find_free_vmid(used, floor, self.ceiling)
            self.reservations.add(vmid)

            if for_workspace:
                vmid_config.next_workspace_vmid = vmid + 1
                self._with_session(lambda db: SettingsService(db).save_vmid_config(vmid_config))

        logger.info(f"Allocated VMID {vmid} ({'workspace' if for_workspace else 'template'})")
        return vmid

    async def allocate_template_vmid(self) -> int:
        return await self._allocate(for_workspace=False)

    async def allocate_workspace_vmid(self) -> int:
        return await self._allocate(for_workspace=True)

    def release(self, vmid: int) -> None:
        """Drop a reservation once the id is persisted or abandoned."""
        self.reservations.discard(vmid)
