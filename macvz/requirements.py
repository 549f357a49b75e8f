"""Readiness checks the host agent waits for while the guest boots."""

from __future__ import annotations

import json
import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from macvz.osutil import trim_mac_address
from macvz.portforward import SSHConfig

logger = logging.getLogger(__name__)

PROBE_MODE_READINESS = "readiness"
SSH_PORT = 22


@dataclass(frozen=True)
class Requirement:
    description: str
    script: str
    debug_hint: str = ""
    fatal: bool = False
    # Run on the host instead of in the guest.
    host: bool = False


@dataclass(frozen=True)
class Probe:
    mode: str = PROBE_MODE_READINESS
    description: str = ""
    script: str = ""
    hint: str = ""


class RequirementError(Exception):
    """One or more requirements could not be satisfied."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(self.errors))


def host_requirements(mac_address: str) -> list[Requirement]:
    """Requirements checked on the host before the guest is reachable."""
    script = f"""#!/bin/bash
if [[ $( arp -a | grep -w -i '{trim_mac_address(mac_address)}' | awk '{{print $2}}') ]]; then
  exit 0
else
  exit 1
fi
"""
    return [
        Requirement(
            description="Host IP Bind",
            script=script,
            debug_hint="Failed to acquire host IP.\n",
            host=True,
        )
    ]


def essential_requirements() -> list[Requirement]:
    """Requirements without which the guest cannot be used."""
    return [
        Requirement(
            description="ssh",
            script="#!/bin/bash\ntrue\n",
            debug_hint=(
                "Failed to SSH into the guest.\n"
                "If any private key under ~/.ssh is protected with a passphrase, "
                "you need to have ssh-agent to be running.\n"
            ),
        ),
        Requirement(
            description="user session is ready for ssh",
            script="""#!/bin/bash
set -eux -o pipefail
if ! timeout 30s bash -c "until sudo diff -q /run/macvz-ssh-ready /mnt/cidata/meta-data 2>/dev/null; do sleep 3; done"; then
	echo >&2 "not ready to start persistent ssh session"
	exit 1
fi
""",
            debug_hint=(
                "The boot sequence will terminate any existing user session after updating\n"
                "/etc/environment to make sure the session includes the new values.\n"
                "Terminating the session will break the persistent SSH tunnel, so\n"
                "it must not be created until the session reset is done.\n"
            ),
        ),
    ]


def optional_requirements(probes: Iterable[Probe]) -> list[Requirement]:
    """One requirement per readiness probe."""
    return [
        Requirement(description=p.description, script=p.script, debug_hint=p.hint)
        for p in probes
        if p.mode == PROBE_MODE_READINESS
    ]


def final_requirements() -> list[Requirement]:
    """Requirements marking the end of the boot."""
    return [
        Requirement(
            description="boot scripts must have finished",
            script="""#!/bin/bash
set -eux -o pipefail
if ! timeout 30s bash -c "until sudo diff -q /run/lima-boot-done /mnt/cidata/meta-data 2>/dev/null; do sleep 3; done"; then
	echo >&2 "boot scripts have not finished"
	exit 1
fi
""",
            debug_hint=(
                "All boot scripts, provisioning scripts, and readiness probes must\n"
                'finish before the instance is considered "ready".\n'
                'Check "/var/log/cloud-init-output.log" in the guest to see where '
                "the process is blocked!\n"
            ),
        )
    ]


def _interpreter(script: str, description: str) -> str:
    first_line = script.split("\n", 1)[0]
    if not first_line.startswith("#!"):
        raise ValueError(f"script {description!r} has no interpreter line")
    interpreter = first_line[2:].strip()
    if not interpreter:
        raise ValueError(f"script {description!r} has an empty interpreter line")
    return interpreter


def run_requirement(
    requirement: Requirement,
    ssh_config: Optional[SSHConfig] = None,
    ssh_remote: str = "",
) -> None:
    """Run the requirement's script once; raise RuntimeError if it fails."""
    logger.debug("executing script %r", requirement.description)
    if requirement.host:
        command = ["bash"]
    else:
        if ssh_config is None:
            raise ValueError("an SSH configuration is needed to run a guest script")
        command = [
            ssh_config.binary,
            *ssh_config.args(),
            "-p", str(SSH_PORT),
            ssh_remote,
            "--",
            _interpreter(requirement.script, requirement.description),
        ]
    completed = subprocess.run(
        command, input=requirement.script, capture_output=True, text=True
    )
    logger.debug(
        "stdout=%r, stderr=%r, exit status=%d",
        completed.stdout,
        completed.stderr,
        completed.returncode,
    )
    if completed.returncode != 0:
        raise RuntimeError(
            f"stdout={completed.stdout!r}, stderr={completed.stderr!r}: "
            f"exit status {completed.returncode}"
        )


def wait_for_requirements(
    label: str,
    requirements: list[Requirement],
    check: Callable[[Requirement], Any],
    retries: int = 60,
    sleep: float = 10.0,
) -> None:
    """Check each requirement in turn, retrying failures.

    A failing fatal requirement stops the checks at once. Raises
    RequirementError listing every requirement that was not satisfied.
    """
    if retries < 1:
        raise ValueError("retries must be at least 1")
    errors: list[str] = []
    total = len(requirements)
    for number, req in enumerate(requirements, 1):
        description = json.dumps(req.description)
        for attempt in range(retries):
            logger.info(
                "Waiting for the %s requirement %d of %d: %s", label, number, total, description
            )
            try:
                check(req)
            except Exception as exc:
                if req.fatal:
                    logger.info("No further %s requirements will be checked", label)
                    errors.append(
                        f"failed to satisfy the {label} requirement {number} of {total} "
                        f"{description}: {req.debug_hint}; skipping further checks: {exc}"
                    )
                    raise RequirementError(errors) from exc
                if attempt == retries - 1:
                    errors.append(
                        f"failed to satisfy the {label} requirement {number} of {total} "
                        f"{description}: {req.debug_hint}: {exc}"
                    )
                    break
                time.sleep(sleep)
            else:
                logger.info("The %s requirement %d of %d is satisfied", label, number, total)
                break
    if errors:
        raise RequirementError(errors)