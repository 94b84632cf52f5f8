"""SiteProvisioner — OS-level footprint of a site.

Creates and removes the site's system account, its filesystem root
(``services/ logs/ data/ tmp/``) and each service's working directory
and generated ``.env`` file. Account and ownership changes go through
the ProcessRunner as root; directory and file writes are done in-process
because the control plane owns ``sites_dir``.
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from hostplane.exceptions import ProvisioningError
from hostplane.runner import ProcessRunner
from hostplane.services.models import Service
from hostplane.sites.models import Site
from hostplane.types import utcnow

_logger = logging.getLogger(__name__)


def render_env(site: Site, service: Service) -> str:
    """PORT first, then site variables, then service variables (later wins)."""
    lines = [
        "# Generated by hostplane, do not edit",
        f"# Site: {site.name}",
        f"# Service: {service.name}",
        f"# Generated: {utcnow().isoformat(timespec='seconds')}Z",
        "",
        f"PORT={service.port}",
    ]
    if site.environment:
        lines += ["", "# Site environment"]
        lines += [f"{k}={v}" for k, v in site.environment.items()]
    if service.environment:
        lines += ["", "# Service environment"]
        lines += [f"{k}={v}" for k, v in service.environment.items()]
    return "\n".join(lines) + "\n"


def merged_env(site: Site, service: Service) -> dict[str, str]:
    return {"PORT": str(service.port), **site.environment, **service.environment}


class SiteProvisioner:
    def __init__(
        self,
        runner: ProcessRunner,
        sites_dir: str | Path = "/var/www/sites",
        dry_run: bool = False,
        manage_accounts: bool = True,
    ) -> None:
        self._runner = runner
        self.sites_dir = Path(sites_dir)
        self._dry_run = dry_run
        self._manage_accounts = manage_accounts

    def site_root(self, name: str) -> str:
        return str(self.sites_dir / name)

    @staticmethod
    def account_name(name: str) -> str:
        return f"site_{name}"

    def service_dir(self, site: Site, service_name: str) -> str:
        return f"{site.services_dir}/{service_name}"

    # ── Site footprint ──

    async def provision(self, site: Site) -> None:
        """Account, directory tree and permissions for a new site."""
        await self._create_account(site)
        self._create_directories(site)
        await self._set_permissions(site)

    async def _create_account(self, site: Site) -> None:
        if not self._manage_accounts:
            return
        if self._dry_run:
            _logger.info("[dry-run] would create account %s", site.linux_user)
            return
        probe = await self._runner.run(["id", site.linux_user], shell=False, timeout=10)
        if probe.success:
            _logger.info("Account %s already exists", site.linux_user)
            return
        result = await self._runner.run_privileged([
            "useradd", "--system", "--no-create-home",
            "--home-dir", site.root,
            "--shell", "/usr/sbin/nologin",
            "--comment", f"hostplane site {site.name}",
            site.linux_user,
        ])
        if not result.success:
            _logger.error(
                "useradd %s failed (exit=%s): %s",
                site.linux_user, result.exit_code, result.stderr[:1000],
            )
            raise ProvisioningError(f"Could not create account for site {site.name}")

    def _create_directories(self, site: Site) -> None:
        paths = [site.root, site.services_dir, site.logs_dir, site.data_dir, site.tmp_dir]
        if self._dry_run:
            _logger.info("[dry-run] would create %s", ", ".join(paths))
            return
        try:
            for path in paths:
                Path(path).mkdir(parents=True, exist_ok=True)
            os.chmod(site.tmp_dir, 0o700)
        except OSError as e:
            _logger.error("Creating directories for site %s failed: %s", site.name, e)
            raise ProvisioningError(f"Could not create directories for site {site.name}") from e

    async def _set_permissions(self, site: Site) -> None:
        if not self._manage_accounts or self._dry_run:
            return
        owner = f"{site.linux_user}:{site.linux_user}"
        for argv in (
            ["chown", "-R", owner, site.root],
            ["chmod", "750", site.root, site.services_dir, site.logs_dir, site.data_dir],
        ):
            result = await self._runner.run_privileged(argv)
            if not result.success:
                _logger.warning("%s failed for site %s: %s", argv[0], site.name, result.stderr[:500])

    async def remove_account(self, site: Site) -> None:
        if not self._manage_accounts:
            return
        if self._dry_run:
            _logger.info("[dry-run] would delete account %s", site.linux_user)
            return
        await self._runner.run_privileged(["pkill", "-u", site.linux_user])
        result = await self._runner.run_privileged(["userdel", site.linux_user])
        if not result.success:
            _logger.warning("userdel %s failed: %s", site.linux_user, result.stderr[:500])

    def remove_root(self, site: Site) -> bool:
        root = Path(site.root).resolve()
        if self.sites_dir.resolve() not in root.parents:
            raise ProvisioningError(f"Refusing to delete {root}: outside {self.sites_dir}")
        if self._dry_run:
            _logger.info("[dry-run] would delete %s", root)
            return True
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            return True
        except OSError as e:
            _logger.error("Deleting %s failed: %s", root, e)
            return False
        return True

    # ── Service footprint ──

    async def create_service_dir(self, site: Site, service: Service) -> None:
        path = Path(service.working_dir or self.service_dir(site, service.name))
        if self._dry_run:
            _logger.info("[dry-run] would create %s", path)
            return
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            _logger.error("Creating %s failed: %s", path, e)
            raise ProvisioningError(f"Could not create directory for service {service.name}") from e
        if self._manage_accounts:
            await self._runner.run_privileged(
                ["chown", f"{site.linux_user}:{site.linux_user}", str(path)]
            )

    def env_path(self, site: Site, service: Service) -> str:
        return f"{service.working_dir or self.service_dir(site, service.name)}/.env"

    async def write_env(self, site: Site, service: Service) -> str:
        path = Path(self.env_path(site, service))
        content = render_env(site, service)
        if self._dry_run:
            _logger.info("[dry-run] would write %s", path)
            return str(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            os.chmod(path, 0o600)
        except OSError as e:
            _logger.error("Writing %s failed: %s", path, e)
            raise ProvisioningError(f"Could not write environment for service {service.name}") from e
        if self._manage_accounts:
            await self._runner.run_privileged(
                ["chown", f"{site.linux_user}:{site.linux_user}", str(path)]
            )
        return str(path)

    def remove_service_dir(self, site: Site, service: Service) -> None:
        path = Path(service.working_dir or self.service_dir(site, service.name))
        if self._dry_run or not path.exists():
            return
        shutil.rmtree(path, ignore_errors=True)
