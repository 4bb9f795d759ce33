"""Builds container engine argument lists for development containers."""

import math
import re
from dataclasses import dataclass
from typing import List, Sequence

from gpu_devbox.config import Settings
from gpu_devbox.utils.exceptions import ValidationError

SSH_CONTAINER_PORT = 22
JUPYTER_CONTAINER_PORT = 8888

BOOTSTRAP_USER = "root"
CONTAINER_PATH = "/opt/conda/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# Runs as `bash -c` inside the container; USERNAME and PASSWORD come from -e flags
BOOTSTRAP_SCRIPT = " && ".join(
    [
        "if ! command -v sshd >/dev/null 2>&1; then "
        "apt-get update && apt-get install -y openssh-server; fi",
        "mkdir -p /var/run/sshd",
        'echo "$USERNAME:$PASSWORD" | chpasswd',
        "sed -i 's/^#\\?PermitRootLogin .*/PermitRootLogin yes/' /etc/ssh/sshd_config",
        "sed -i 's/^#\\?PasswordAuthentication .*/PasswordAuthentication yes/' "
        "/etc/ssh/sshd_config",
        "echo 'export PATH=$PATH:/opt/conda/bin' >> /etc/profile",
        "(/usr/sbin/sshd -D &)",
        f"exec jupyter notebook --ip 0.0.0.0 --port {JUPYTER_CONTAINER_PORT} "
        "--no-browser --allow-root",
    ]
)

# Best-effort SSH start after start/restart; tolerated when no ssh service exists
SSH_START_ARGV = ["sh", "-c", "command -v service >/dev/null 2>&1 && service ssh start"]

IMAGE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._/-]*(:[A-Za-z0-9._-]+)?(@sha256:[a-f0-9]{64})?$")
MEMORY_PATTERN = re.compile(r"^[0-9]+(\.[0-9]+)?[bkmgBKMG]?$")
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


@dataclass
class ContainerSpec:
    """Everything needed to (re)create one development container."""

    image_name: str
    memory_limit: str
    cpus: str
    gpus: str
    container_name: str
    user_id: int
    ssh_port: int
    jupyter_port: int
    password: str

    @property
    def wants_gpu(self) -> bool:
        """Whether a GPU reservation flag should be emitted."""
        return self.gpus.strip().lower() != "none"


class CommandBuilder:
    """Deterministically turns a ContainerSpec into engine arguments."""

    def __init__(
        self,
        dns_servers: Sequence[str] = (),
        label_prefix: str = "devbox",
        gpu_pattern: str = r'^(all|[0-9]+|"?device=[0-9A-Za-z,:-]+"?)$',
    ) -> None:
        """
        Initialize command builder.

        Args:
            dns_servers: Resolvers, one ``--dns`` flag each
            label_prefix: Label namespace marking managed containers
            gpu_pattern: Allow-list regex for GPU reservation values
        """
        self.dns_servers = list(dns_servers)
        self.label_prefix = label_prefix
        self.gpu_pattern = re.compile(gpu_pattern)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CommandBuilder":
        """Build a command builder from application settings."""
        return cls(
            dns_servers=settings.dns_servers_list,
            label_prefix=settings.container_label_prefix,
            gpu_pattern=settings.gpu_spec_pattern,
        )

    def validate_resources(self, image_name: str, memory_limit: str, cpus: str, gpus: str) -> None:
        """
        Validate user-supplied resource fields.

        Raises:
            ValidationError: If a field is malformed
        """
        if not IMAGE_PATTERN.match(image_name):
            raise ValidationError(f"Invalid image name: {image_name!r}", field="imageName")
        if not MEMORY_PATTERN.match(memory_limit):
            raise ValidationError(f"Invalid memory limit: {memory_limit!r}", field="memoryLimit")
        try:
            cpu_value = float(cpus)
        except ValueError:
            cpu_value = 0.0
        if not math.isfinite(cpu_value) or cpu_value <= 0:
            raise ValidationError(f"Invalid CPU count: {cpus!r}", field="cpus")
        gpus = gpus.strip()
        if not gpus:
            raise ValidationError("GPU specification is required", field="gpus")
        if gpus.lower() != "none" and not self.gpu_pattern.match(gpus):
            raise ValidationError(f"Invalid GPU specification: {gpus!r}", field="gpus")

    def build_run_args(self, spec: ContainerSpec) -> List[str]:
        """
        Build the ``run`` invocation for a development container.

        Args:
            spec: Container description

        Returns:
            Engine arguments, without the engine binary

        Raises:
            ValidationError: If a field of the container description is malformed
        """
        self.validate_resources(spec.image_name, spec.memory_limit, spec.cpus, spec.gpus)
        if not NAME_PATTERN.match(spec.container_name):
            raise ValidationError(f"Invalid container name: {spec.container_name!r}")

        args = [
            "run",
            "-d",
            "--name",
            spec.container_name,
            "--label",
            f"{self.label_prefix}.managed=true",
            "--label",
            f"user={spec.user_id}",
        ]
        for server in self.dns_servers:
            args += ["--dns", server]
        args += [
            "-e",
            f"USERNAME={BOOTSTRAP_USER}",
            "-e",
            f"PASSWORD={spec.password}",
            "-e",
            f"PATH={CONTAINER_PATH}",
            "-e",
            "HOME=/root",
            "-e",
            "NB_USER=root",
            "--user",
            BOOTSTRAP_USER,
            f"--memory={spec.memory_limit}",
            f"--cpus={spec.cpus}",
        ]
        if spec.wants_gpu:
            args += ["--gpus", spec.gpus.strip()]
        args += [
            "-p",
            f"{spec.ssh_port}:{SSH_CONTAINER_PORT}",
            "-p",
            f"{spec.jupyter_port}:{JUPYTER_CONTAINER_PORT}",
            spec.image_name,
            "/bin/bash",
            "-c",
            BOOTSTRAP_SCRIPT,
        ]
        return args

    @staticmethod
    def build_password_argv(password: str) -> List[str]:
        """
        Build the in-container command that sets the root password.

        The password travels as a positional argument, never inside the script text.
        """
        return ["sh", "-c", 'echo "root:$1" | chpasswd', "chpasswd", password]
