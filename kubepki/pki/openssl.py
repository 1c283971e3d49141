import logging
import os
import pathlib
import tempfile
from typing import List, Optional

from ..errors import CAPrerequisiteMissing, CertGenerationError
from ..runner import CommandResult, CommandRunner
from .types import CertificateConfig

log = logging.getLogger(__name__)


def alt_names_section(config: CertificateConfig) -> List[str]:
    """DNS entries first, then IP entries, each numbered from 1."""
    dns = [a.value for a in config.alt_names if a.kind == "DNS"]
    ips = [a.value for a in config.alt_names if a.kind == "IP"]
    lines = [f"DNS.{i} = {v}" for i, v in enumerate(dns, 1)]
    lines += [f"IP.{i} = {v}" for i, v in enumerate(ips, 1)]
    return lines


def render_request_config(config: CertificateConfig) -> str:
    lines = [
        "[req]",
        "req_extensions = v3_req",
        "distinguished_name = req_distinguished_name",
        "prompt = no",
        "",
        "[req_distinguished_name]",
        f"CN = {config.common_name}",
        f"O = {config.organization}",
    ]
    if config.country:
        lines.append(f"C = {config.country}")
    if config.state:
        lines.append(f"ST = {config.state}")
    if config.locality:
        lines.append(f"L = {config.locality}")
    lines += [
        "",
        "[v3_req]",
        f"basicConstraints = {config.basic_constraints()}",
        f"keyUsage = {', '.join(config.key_usage)}",
    ]
    if config.alt_names:
        lines += ["subjectAltName = @alt_names", "", "[alt_names]", *alt_names_section(config)]
    return "\n".join(lines) + "\n"


def render_extensions(config: CertificateConfig) -> str:
    lines = [
        f"basicConstraints = {config.basic_constraints()}",
        f"keyUsage = {', '.join(config.key_usage)}",
    ]
    if config.extended_key_usage:
        lines.append(f"extendedKeyUsage = {', '.join(config.extended_key_usage)}")
    if config.alt_names:
        lines += ["subjectAltName = @alt_names", "", "[alt_names]", *alt_names_section(config)]
    return "\n".join(lines) + "\n"


class _TransientFile:
    """Write ``text`` to a temp file in ``directory`` and remove it on exit."""

    def __init__(self, directory: pathlib.Path, suffix: str, text: str) -> None:
        self.directory = directory
        self.suffix = suffix
        self.text = text
        self.path: Optional[pathlib.Path] = None

    def __enter__(self) -> pathlib.Path:
        fd, name = tempfile.mkstemp(suffix=self.suffix, dir=self.directory)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(self.text)
        self.path = pathlib.Path(name)
        return self.path

    def __exit__(self, *exc) -> None:
        if self.path is not None:
            self.path.unlink(missing_ok=True)


class OpenSSL:
    def __init__(self, runner: CommandRunner, binary: str = "openssl") -> None:
        self.runner = runner
        self.binary = binary

    def _run(self, stage: str, args: List[str]) -> CommandResult:
        res = self.runner.run([self.binary, *args])
        if not res.ok:
            raise CertGenerationError(stage, f"openssl {args[0]} failed (rc={res.returncode})", res.stderr)
        return res

    def genrsa(self, key_path: pathlib.Path, bits: int) -> None:
        self._run("key", ["genrsa", "-out", str(key_path), str(bits)])
        os.chmod(key_path, 0o600)

    def request(self, config: CertificateConfig, key_path: pathlib.Path, csr_path: pathlib.Path) -> None:
        with _TransientFile(config.output_dir, ".cnf", render_request_config(config)) as cnf:
            self._run("csr", [
                "req", "-new",
                "-key", str(key_path),
                "-out", str(csr_path),
                "-config", str(cnf),
                "-batch",
            ])

    def sign(
        self,
        config: CertificateConfig,
        csr_path: pathlib.Path,
        cert_path: pathlib.Path,
        key_path: pathlib.Path,
        ca_dir: Optional[pathlib.Path] = None,
    ) -> None:
        args = ["x509", "-req", "-in", str(csr_path), "-out", str(cert_path), "-days", str(config.validity_days)]
        if config.kind.self_signed:
            args += ["-signkey", str(key_path)]
        else:
            if ca_dir is None:
                raise CAPrerequisiteMissing(f"no signing CA configured for {config.common_name}")
            args += ["-CA", str(ca_dir / "ca.crt"), "-CAkey", str(ca_dir / "ca.key")]
            serial = ca_dir / "serial"
            if serial.exists():
                args += ["-CAserial", str(serial)]
            else:
                args += ["-CAcreateserial"]
        with _TransientFile(config.output_dir, ".ext", render_extensions(config)) as ext:
            args += ["-extfile", str(ext)]
            self._run("sign", args)

    def rand_hex(self, nbytes: int = 16) -> str:
        return self._run("serial", ["rand", "-hex", str(nbytes)]).stdout.strip()

    def verify(self, ca_file: pathlib.Path, cert_file: pathlib.Path) -> CommandResult:
        return self.runner.run([self.binary, "verify", "-CAfile", str(ca_file), str(cert_file)])

    def inspect(self, cert_file: pathlib.Path) -> CommandResult:
        return self.runner.run([self.binary, "x509", "-in", str(cert_file), "-noout", "-text"])
