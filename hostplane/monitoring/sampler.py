"""Host and per-site resource sampling through psutil.

psutil calls block, so both samplers hop to a worker thread. Site usage
is the sum over processes owned by the site's account plus a walk of the
site root for disk bytes and file count.
"""

from __future__ import annotations

import asyncio
import os
import time

import psutil

from hostplane.monitoring.models import (
    CpuStats, DiskStats, HostMetrics, MemoryStats, NetworkStats, ProcessStats, SiteUsage,
)
from hostplane.sites.models import Site

_MB = 1024 * 1024


class SystemSampler:
    """Reads live host and site usage."""

    def __init__(self, disk_path: str = "/") -> None:
        self._disk_path = disk_path

    async def sample_host(self) -> HostMetrics:
        return await asyncio.to_thread(self._host)

    async def sample_site(self, site: Site) -> SiteUsage:
        return await asyncio.to_thread(self._site, site)

    def _host(self) -> HostMetrics:
        vm = psutil.virtual_memory()
        disk = psutil.disk_usage(self._disk_path)
        net = psutil.net_io_counters()
        try:
            load = list(os.getloadavg())
        except OSError:
            load = [0.0, 0.0, 0.0]

        procs = ProcessStats()
        for proc in psutil.process_iter(["status"]):
            procs.total += 1
            status = proc.info.get("status")
            if status == psutil.STATUS_RUNNING:
                procs.running += 1
            elif status in (psutil.STATUS_SLEEPING, psutil.STATUS_IDLE, psutil.STATUS_DISK_SLEEP):
                procs.sleeping += 1
            elif status in (psutil.STATUS_STOPPED, psutil.STATUS_TRACING_STOP):
                procs.stopped += 1

        return HostMetrics(
            cpu=CpuStats(
                percent=psutil.cpu_percent(interval=0.1),
                cores=psutil.cpu_count() or 0,
                load_avg=[round(x, 2) for x in load],
            ),
            memory=MemoryStats(
                total=vm.total, used=vm.used, available=vm.available, percent=vm.percent,
            ),
            disk=DiskStats(
                total=disk.total, used=disk.used, free=disk.free, percent=disk.percent,
            ),
            network=NetworkStats(
                bytes_in=net.bytes_recv, bytes_out=net.bytes_sent,
                packets_in=net.packets_recv, packets_out=net.packets_sent,
            ) if net else NetworkStats(),
            processes=procs,
            uptime_s=int(time.time() - psutil.boot_time()),
        )

    def _site(self, site: Site) -> SiteUsage:
        usage = SiteUsage(
            memory_limit_mb=site.limits.max_memory_mb,
            disk_limit_mb=site.limits.max_disk_mb or 0,
        )
        if site.linux_user:
            cpu = 0.0
            rss = 0
            for proc in psutil.process_iter(["username", "cpu_percent", "memory_info"]):
                if proc.info.get("username") != site.linux_user:
                    continue
                cpu += proc.info.get("cpu_percent") or 0.0
                mem = proc.info.get("memory_info")
                rss += mem.rss if mem else 0
            usage.cpu_percent = round(cpu, 1)
            usage.memory_bytes = rss
            if usage.memory_limit_mb:
                usage.memory_percent = round(rss / (usage.memory_limit_mb * _MB) * 100, 1)

        if site.root and os.path.isdir(site.root):
            total = 0
            files = 0
            for dirpath, _dirs, filenames in os.walk(site.root):
                for name in filenames:
                    try:
                        total += os.lstat(os.path.join(dirpath, name)).st_size
                        files += 1
                    except OSError:
                        continue
            usage.disk_bytes = total
            usage.file_count = files
            if usage.disk_limit_mb:
                usage.disk_percent = round(total / (usage.disk_limit_mb * _MB) * 100, 1)
        return usage
