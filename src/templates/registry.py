from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Literal

Framework = Literal["nextjs", "react", "vue", "angular", "svelte"]

DEFAULT_FRAMEWORK: Framework = "nextjs"

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrameworkSpec:
    framework: Framework
    label: str
    # `{dir}` is the working directory name, relative to the parent it runs in.
    generator_command: str
    # `{port}` is substituted at launch.
    dev_command: str
    # Any of these in the working directory means a project already exists.
    config_markers: tuple[str, ...]
    icon_path: str
    toolkit_init_command: str | None = None
    toolkit_config: str = "components.json"
    # The pre-baked seed on the sandbox image is a Next.js app.
    seed_supported: bool = False

    def generate(self, target_dir: str) -> str:
        return self.generator_command.format(dir=target_dir)

    def dev(self, port: int) -> str:
        return self.dev_command.format(port=int(port))


_VITE_DEV = "npm run dev -- --port {port} --host 0.0.0.0"

_DEFAULT_SPECS: dict[Framework, FrameworkSpec] = {
    "nextjs": FrameworkSpec(
        framework="nextjs",
        label="Next.js (App Router, TypeScript, Tailwind)",
        generator_command=(
            'npx --yes create-next-app@latest {dir} --typescript --tailwind --eslint --app '
            '--src-dir --import-alias "@/*" --use-npm --skip-install --yes'
        ),
        dev_command="npm run dev -- -p {port} -H 0.0.0.0",
        config_markers=("next.config.js", "next.config.mjs", "next.config.ts"),
        icon_path="src/app/icon.png",
        toolkit_init_command="npx --yes shadcn@latest init --yes --defaults",
        seed_supported=True,
    ),
    "react": FrameworkSpec(
        framework="react",
        label="React (Create React App, TypeScript)",
        generator_command="npx --yes create-react-app {dir} --template typescript",
        dev_command="PORT={port} BROWSER=none HOST=0.0.0.0 npm start",
        config_markers=("tsconfig.json",),
        icon_path="public/icon.png",
    ),
    "vue": FrameworkSpec(
        framework="vue",
        label="Vue 3 (Vite, TypeScript)",
        generator_command=(
            "npm create vue@latest {dir} -- --typescript --jsx --router --pinia --yes"
        ),
        dev_command=_VITE_DEV,
        config_markers=("vite.config.ts", "vite.config.js"),
        icon_path="public/icon.png",
    ),
    "angular": FrameworkSpec(
        framework="angular",
        label="Angular",
        generator_command=(
            "NG_CLI_ANALYTICS=false npx --yes @angular/cli@latest new project --directory {dir} "
            "--routing --style=css --skip-git --skip-install --ssr=false --defaults "
            "--package-manager npm"
        ),
        dev_command="npx ng serve --port {port} --host 0.0.0.0",
        config_markers=("angular.json",),
        icon_path="public/icon.png",
    ),
    "svelte": FrameworkSpec(
        framework="svelte",
        label="SvelteKit (TypeScript)",
        generator_command=(
            "npm create svelte@latest {dir} -- --template skeleton --types ts "
            "--no-prettier --no-eslint --no-playwright --no-vitest"
        ),
        dev_command=_VITE_DEV,
        config_markers=("svelte.config.js", "svelte.config.ts"),
        icon_path="static/icon.png",
    ),
}


def parse_framework(raw: Any) -> Framework | None:
    v = str(raw or "").strip().lower()
    if v in _DEFAULT_SPECS:
        return v  # type: ignore[return-value]
    return None


def list_framework_specs() -> list[FrameworkSpec]:
    return [framework_spec(f) for f in _DEFAULT_SPECS]  # type: ignore[arg-type]


def framework_spec(framework: str | None) -> FrameworkSpec | None:
    """Return the spec for `framework`, or None when it is not supported.

    Dev commands can be overridden by BUILDER_DEV_COMMAND_MAP_JSON (JSON object
    of framework -> command template containing `{port}`).
    """
    fw = parse_framework(framework)
    if fw is None:
        return None
    spec = _DEFAULT_SPECS[fw]

    raw = (os.environ.get("BUILDER_DEV_COMMAND_MAP_JSON") or "").strip()
    if not raw:
        return spec
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError:
        _log.warning("Ignoring invalid BUILDER_DEV_COMMAND_MAP_JSON")
        return spec
    if not isinstance(overrides, dict):
        return spec
    v = overrides.get(fw)
    if isinstance(v, str) and "{port}" in v:
        return replace(spec, dev_command=v.strip())
    return spec
