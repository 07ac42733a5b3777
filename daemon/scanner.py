"""
Project discovery.

Walks the scan root looking for project roots (a package.json or a
docker-compose file) and infers what it can about each one: the port it
serves on, its GitHub remote, package manager, framework, runtime, dev
command and a coarse project type.

Metadata comes from ordered chains of small detectors. Each detector
looks at one source and returns a value or None; the first non-None
value wins. Detectors do no I/O beyond reading the files they inspect.
"""

import json
import logging
import re
from pathlib import Path
from typing import Callable, Optional

from core.models import ScannedApp

log = logging.getLogger("devdock.scanner")

MAX_DEPTH = 6

# Directories never descended into
SKIP_DIRS = frozenset({
    # JS dependencies and tool caches
    "node_modules", ".pnp", ".yarn", ".pnpm-store",
    ".next", ".nuxt", ".svelte-kit", ".expo", ".turbo",
    ".cache", ".parcel-cache", ".eslintcache",
    # Build output
    "dist", "build", "out", ".output", ".vercel",
    "vendor", "target", "bin", "obj",
    # VCS
    ".git",
    # Tests and scratch
    "coverage", "__snapshots__", "tmp", "temp", "logs",
    # Python
    "__pycache__", ".venv", "venv",
    # Mobile build artifacts
    "ios", "android", "DerivedData", "SourcePackages", "Pods", "fastlane",
})

COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml")
VITE_CONFIGS = ("vite.config.ts", "vite.config.js", "vite.config.mts", "vite.config.mjs")
ENV_FILES = (".env", ".env.local", ".env.development")
MONOREPO_MARKERS = ("turbo.json", "pnpm-workspace.yaml", "pnpm-workspace.yml")
PRIORITY_SCRIPTS = ("dev", "develop", "start", "serve")
DEV_SCRIPTS = ("dev", "develop", "start")

# Lockfile -> package manager, checked in this order
LOCKFILES = (
    ("bun.lock", "bun"),
    ("bun.lockb", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
)

# Dependency name -> framework tag, first match wins
FRAMEWORKS = (
    ("next", "nextjs"),
    ("hono", "hono"),
    ("@remix-run/react", "remix"),
    ("@remix-run/node", "remix"),
    ("@sveltejs/kit", "sveltekit"),
    ("astro", "astro"),
    ("vite", "vite"),
    ("express", "express"),
    ("fastify", "fastify"),
)

API_FRAMEWORKS = frozenset({"hono", "express", "fastify"})

_SCRIPT_FLAG_RE = re.compile(r"(?:--port|-p)\s+(\d{4,5})\b")
_SCRIPT_ENV_RE = re.compile(r"\bPORT=(\d{4,5})\b")
_SCRIPT_RUNSERVER_RE = re.compile(r"runserver\s+(?:[\w.]+:)?(\d{4,5})\b")
_VITE_PORT_RE = re.compile(r"server\s*:\s*\{[^}]*\bport\s*:\s*(\d{4,5})")
_ENV_PORT_RE = re.compile(r"^PORT=(\d{4,5})", re.MULTILINE)
_COMPOSE_PORT_RE = re.compile(r"['\"\- ]+(\d{4,5}):\d{4,5}")
_FLY_PORT_RE = re.compile(r"internal_port\s*=\s*(\d{4,5})")
_GITHUB_HTTPS_RE = re.compile(
    r"url\s*=\s*https?://github\.com/([^/\s]+/[^/\s]+?)(?:\.git)?\s*$", re.MULTILINE,
)
_GITHUB_SSH_RE = re.compile(
    r"url\s*=\s*git@github\.com:([^/\s]+/[^/\s]+?)(?:\.git)?\s*$", re.MULTILINE,
)

PortDetector = Callable[[Path, Optional[dict]], Optional[int]]


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def _read_text(path: Path) -> Optional[str]:
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def read_manifest(directory: Path) -> Optional[dict]:
    """Parsed package.json, or None if missing or unreadable."""
    text = _read_text(directory / "package.json")
    if text is None:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _scripts(manifest: Optional[dict]) -> dict[str, str]:
    if not manifest:
        return {}
    scripts = manifest.get("scripts") or {}
    if not isinstance(scripts, dict):
        return {}
    return {str(k): str(v) for k, v in scripts.items() if v}


def _first_match(pattern: re.Pattern, text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    m = pattern.search(text)
    return int(m.group(1)) if m else None


def _ancestors(directory: Path, stop: Path):
    """Yield directory and its parents, stopping before `stop` or the fs root."""
    current = directory
    while current != stop and current != current.parent:
        yield current
        current = current.parent


# ---------------------------------------------------------------------------
# Port detectors
# ---------------------------------------------------------------------------


_SCRIPT_PORT_PATTERNS = (_SCRIPT_FLAG_RE, _SCRIPT_ENV_RE, _SCRIPT_RUNSERVER_RE)


def port_from_script(script: str) -> Optional[int]:
    """Port from a run command: --port/-p flag, then PORT=, then runserver."""
    for pattern in _SCRIPT_PORT_PATTERNS:
        found = _first_match(pattern, script)
        if found:
            return found
    return None


def detect_script_port(directory: Path, manifest: Optional[dict]) -> Optional[int]:
    scripts = _scripts(manifest)
    for key in PRIORITY_SCRIPTS:
        if key in scripts:
            found = port_from_script(scripts[key])
            if found:
                return found
    for value in scripts.values():
        found = port_from_script(value)
        if found:
            return found
    return None


def detect_vite_port(directory: Path, manifest: Optional[dict]) -> Optional[int]:
    for name in VITE_CONFIGS:
        found = _first_match(_VITE_PORT_RE, _read_text(directory / name))
        if found:
            return found
    return None


def detect_env_port(directory: Path, manifest: Optional[dict]) -> Optional[int]:
    for name in ENV_FILES:
        found = _first_match(_ENV_PORT_RE, _read_text(directory / name))
        if found:
            return found
    return None


def detect_compose_port(directory: Path, manifest: Optional[dict]) -> Optional[int]:
    for name in COMPOSE_FILES:
        found = _first_match(_COMPOSE_PORT_RE, _read_text(directory / name))
        if found:
            return found
    return None


def detect_fly_port(directory: Path, manifest: Optional[dict]) -> Optional[int]:
    return _first_match(_FLY_PORT_RE, _read_text(directory / "fly.toml"))


PORT_DETECTORS: tuple[PortDetector, ...] = (
    detect_script_port,
    detect_vite_port,
    detect_env_port,
    detect_compose_port,
    detect_fly_port,
)


def detect_port(directory: Path, manifest: Optional[dict] = None) -> Optional[int]:
    for detector in PORT_DETECTORS:
        found = detector(directory, manifest)
        if found:
            return found
    return None


# ---------------------------------------------------------------------------
# Other detectors
# ---------------------------------------------------------------------------


def detect_github(directory: Path) -> tuple[Optional[str], Optional[str]]:
    """(owner/repo, https URL) from .git/config, HTTPS or SSH remote."""
    content = _read_text(directory / ".git" / "config")
    if not content:
        return None, None
    for pattern in (_GITHUB_HTTPS_RE, _GITHUB_SSH_RE):
        m = pattern.search(content)
        if m:
            name = m.group(1)
            return name, f"https://github.com/{name}"
    return None, None


def detect_package_manager(
    directory: Path, manifest: Optional[dict], scan_root: Path,
) -> Optional[str]:
    declared = str((manifest or {}).get("packageManager") or "")
    for pm in ("bun", "pnpm", "yarn", "npm"):
        if declared.startswith(pm):
            return pm
    for current in _ancestors(directory, scan_root):
        for lockfile, pm in LOCKFILES:
            if (current / lockfile).exists():
                return pm
    return None


def detect_framework(manifest: Optional[dict]) -> Optional[str]:
    if manifest is None:
        return None
    deps: dict = {}
    for key in ("dependencies", "devDependencies"):
        section = manifest.get(key)
        if isinstance(section, dict):
            deps.update(section)
    for dep, framework in FRAMEWORKS:
        if deps.get(dep):
            return framework
    return None


def _has_bun_lock(directory: Path) -> bool:
    return (directory / "bun.lock").exists() or (directory / "bun.lockb").exists()


def detect_runtime(directory: Path, scan_root: Path) -> str:
    if _has_bun_lock(directory):
        return "bun"
    if (directory / "deno.json").exists() or (directory / "deno.jsonc").exists():
        return "deno"
    for current in _ancestors(directory.parent, scan_root):
        if _has_bun_lock(current):
            return "bun"
    return "node"


def run_script_command(pm: Optional[str], script: str) -> str:
    """How a package manager invokes a package.json script."""
    if pm == "bun":
        return f"bun run {script}"
    if pm == "pnpm":
        return f"pnpm {script}"
    if pm == "yarn":
        return f"yarn {script}"
    return f"npm run {script}"


def detect_dev_command(manifest: Optional[dict], pm: Optional[str]) -> Optional[str]:
    scripts = _scripts(manifest)
    key = next((k for k in DEV_SCRIPTS if k in scripts), None)
    if key is None:
        return None
    if "turbo" in scripts[key]:
        # Task runner delegates to workspaces; invoke the root dev task
        if pm == "pnpm":
            return "pnpm dev"
        if pm == "bun":
            return "bun dev"
        return "npm run dev"
    return run_script_command(pm, key)


def _has_monorepo_marker(directory: Path) -> bool:
    return any((directory / marker).exists() for marker in MONOREPO_MARKERS)


def classify_project(
    directory: Path, manifest: Optional[dict], framework: Optional[str],
) -> Optional[str]:
    if _has_monorepo_marker(directory):
        return "monorepo"
    if not (directory / "package.json").exists():
        if any((directory / name).exists() for name in COMPOSE_FILES):
            return "docker"
        return None
    if manifest is not None and not any(k in _scripts(manifest) for k in DEV_SCRIPTS):
        return "library"
    if framework in API_FRAMEWORKS:
        return "api-server"
    return "web-app"


def is_project_root(directory: Path) -> bool:
    if (directory / "package.json").exists():
        return True
    return any((directory / name).exists() for name in COMPOSE_FILES)


def find_monorepo_root(directory: Path, scan_root: Path) -> Optional[Path]:
    """Nearest ancestor (excluding directory itself) that is a monorepo root."""
    for current in _ancestors(directory.parent, scan_root):
        if _has_monorepo_marker(current):
            return current
        manifest = read_manifest(current)
        if manifest and manifest.get("workspaces"):
            return current
    return None


# ---------------------------------------------------------------------------
# Walk
# ---------------------------------------------------------------------------


def inspect_project(directory: Path, scan_root: Path) -> Optional[ScannedApp]:
    """Build a ScannedApp for a project root, or None when nothing identifies it."""
    manifest = read_manifest(directory)
    port = detect_port(directory, manifest)
    github_name, github_url = detect_github(directory)
    if port is None and github_name is None:
        return None

    monorepo_root = find_monorepo_root(directory, scan_root)
    name = f"{monorepo_root.name}/{directory.name}" if monorepo_root else directory.name
    pm = detect_package_manager(directory, manifest, scan_root)
    framework = detect_framework(manifest)
    return ScannedApp(
        name=name,
        local_path=str(directory),
        port=port,
        github_name=github_name,
        github_url=github_url,
        package_manager=pm,
        framework=framework,
        runtime=detect_runtime(directory, scan_root),
        dev_command=detect_dev_command(manifest, pm),
        project_type=classify_project(directory, manifest, framework),
    )


def _walk(directory: Path, depth: int, scan_root: Path, results: list[ScannedApp]) -> None:
    if depth > MAX_DEPTH:
        return
    if depth > 0 and is_project_root(directory):
        app = inspect_project(directory, scan_root)
        if app is not None:
            results.append(app)

    try:
        children = sorted(directory.iterdir())
    except OSError:
        return
    for child in children:
        if child.name in SKIP_DIRS:
            continue
        try:
            if not child.is_dir() or child.is_symlink():
                continue
        except OSError:
            continue
        _walk(child, depth + 1, scan_root, results)


def scan_apps(scan_root: Path) -> list[ScannedApp]:
    """Discover projects under scan_root.

    Projects inside a monorepo whose root was itself discovered are folded
    into the root entry; the root inherits the first child port if it had
    none.
    """
    scan_root = Path(scan_root)
    found: list[ScannedApp] = []
    _walk(scan_root, 0, scan_root, found)

    by_path = {app.local_path: app for app in found}
    folded: set[str] = set()
    for app in found:
        root = find_monorepo_root(Path(app.local_path), scan_root)
        if root is None or str(root) not in by_path:
            continue
        root_app = by_path[str(root)]
        if root_app.port is None and app.port is not None:
            root_app.port = app.port
        folded.add(app.local_path)

    results = [app for app in found if app.local_path not in folded]
    log.info(f"Scan of {scan_root}: {len(results)} project(s) ({len(folded)} folded into monorepos)")
    return results
