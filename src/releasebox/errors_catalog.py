"""Actionable error catalog for releasebox."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "unpinned_tool": {
        "what": "Tool `{name}` is not pinned to an explicit version or channel.",
        "next": "Declare `version` or `channel` in the toolchain manifest; `latest` is not accepted.",
    },
    "unsupported_base": {
        "what": "Unsupported base image `{image}:{version}`.",
        "next": "Use one of the supported bases: {supported}.",
    },
    "missing_fetch_tool": {
        "what": "Tool `{name}` is fetched over the network but no fetch tool is provisioned before it.",
        "next": "Add `curl` or `wget` to the manifest prerequisites.",
    },
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or set `RELEASE_ALLOW_INSECURE_HTTP=1` only for trusted endpoints.",
    },
    "missing_version": {
        "what": "No release version was provided.",
        "next": "Set `RELEASE_VERSION` in the container environment or in `.releasebox.yml`.",
    },
    "workdir_not_found": {
        "what": "Working directory not found: {path}",
        "next": "Mount the project source at the image working directory or set `RELEASE_SOURCE_URL`.",
    },
    "not_a_cargo_project": {
        "what": "No `Cargo.toml` found in {path}.",
        "next": "Run the driver from the project root or point `RELEASE_SOURCE_URL` at a source archive.",
    },
    "entrypoint_missing": {
        "what": "Release entry point not found: {path}",
        "next": "Create it with `releasebox image stub` or copy your driver into the build context.",
    },
    "pip_source_missing": {
        "what": "Install source for `{name}` not found: {path}",
        "next": (
            "Build a wheel of the project into the build context, "
            "e.g. `python -m pip wheel --no-deps -w <context> <checkout>`."
        ),
    },
    "provisioning_step_failed": {
        "what": "Provisioning step `{step}` failed.",
        "next": "Fix the failing command shown above; the image was not tagged.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
