"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class HostplaneSettings(BaseSettings):
    workspace_dir: Path = Path(".hostplane")
    db_path: Path = Path(".hostplane/hostplane.db")
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8430

    # Host layout
    sites_dir: Path = Path("/var/www/sites")
    unit_dir: Path = Path("/etc/systemd/system")
    unit_prefix: str = "hostplane"
    supervisor: str = "systemd"  # systemd|local
    use_sudo: bool = True
    dry_run: bool = False

    # Port pool, half-open [start, end)
    port_pool_start: int = 10000
    port_pool_end: int = 20000
    site_port_width: int = 10

    # Lifecycle timing (seconds)
    start_confirm_timeout: float = 30.0
    confirm_poll_interval: float = 0.5
    stop_grace_seconds: float = 10.0
    install_timeout: float = 300.0
    build_timeout: float = 600.0
    max_output_bytes: int = 1024 * 1024

    # Resource limit policy
    min_memory_mb: int = 64
    max_memory_mb: int = 8192
    min_cpu_percent: int = 1
    max_cpu_percent: int = 400
    min_disk_mb: int = 100
    max_disk_mb: int = 102400

    model_config = {"env_prefix": "HOSTPLANE_"}


settings = HostplaneSettings()
