import argparse
import json
import logging
import pathlib
import sys
from typing import List, Optional

from .errors import CertOperationError, ControlPlaneUnreachable
from .kubeconfig import import_kubeconfig
from .logging_conf import setup_logging
from .orchestrator import Orchestrator
from .settings import Settings

log = logging.getLogger(__name__)


def _create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubepki",
        description="Kubernetes cluster PKI: generate, distribute and validate certificates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  KUBEPKI_BASE_DIR     Working directory holding certs/ and the ledger (default: cwd)
  KUBEPKI_LOG_LEVEL    Log level (default: INFO)
  KUBEPKI_LOG_JSON     Emit JSON log lines when true
        """,
    )
    parser.add_argument("--skip-ssh-check", action="store_true", help="Do not probe hosts before running")
    sub = parser.add_subparsers(dest="command", help="Command to execute")

    sub.add_parser("automate-all", help="Clean up and regenerate the whole PKI")
    sub.add_parser("clean-up", help="Delete generated key material")
    sub.add_parser("ca", help="Create the root CA (if missing), the kubernetes CA and the chain")
    sub.add_parser("control-plane", help="Generate control plane certificates")
    sub.add_parser("workers", help="Generate one certificate per worker node")
    sub.add_parser("service-account", help="Generate the service-account keypair")
    sub.add_parser("kubeconfigs", help="Generate kubeconfigs")
    sub.add_parser("encryption-config", help="Generate the secrets encryption config")

    dist = sub.add_parser("distribute", help="Copy certificates to their hosts")
    dist.add_argument("name", nargs="?", help="Ledger name; all pending entries when omitted")
    dist.add_argument("--host", action="append", dest="hosts", help="Override target hosts (repeatable)")

    regen = sub.add_parser("regenerate", help="Regenerate one component or node certificate")
    regen.add_argument("name", help="Ledger name, e.g. kube-apiserver or node-2")

    ver = sub.add_parser("verify", help="Verify generated certificates against the CA chain")
    ver.add_argument("--host", help="Verify the copies placed on this host instead of the local files")

    imp = sub.add_parser("import", help="Record certificates already on disk in the ledger")
    imp.add_argument("--kubeconfig", help="Also summarize an existing kubeconfig")
    sub.add_parser("status", help="Print the ledger")
    sub.add_parser("trust", help="Validate trust per node and print the results")
    sub.add_parser("serve", help="Run the read-only status server")
    return parser


def _execute_command(args: argparse.Namespace, orch: Orchestrator) -> int:
    simple = {
        "clean-up": orch.clean_up,
        "ca": orch.generate_ca_chain,
        "control-plane": orch.generate_control_plane,
        "workers": orch.generate_workers,
        "service-account": orch.generate_service_account,
        "kubeconfigs": orch.generate_kubeconfigs,
        "encryption-config": orch.generate_encryption_config,
    }
    if args.command in simple:
        result = orch.submit(args.command, simple[args.command]).result()
        if isinstance(result, list) and result and args.command in ("workers", "kubeconfigs"):
            print(f"failed: {', '.join(result)}", file=sys.stderr)
            return 1
        return 0

    if args.command == "automate-all":
        report = orch.submit("automate-all", orch.automate_all).result()
        for step, err in report.failures.items():
            print(f"{step}: {err}", file=sys.stderr)
        return 0 if report.ok else 1

    if args.command == "distribute":
        if args.name:
            results = {args.name: orch.submit("distribute", lambda: orch.distribute(args.name, args.hosts)).result()}
        else:
            results = orch.submit("distribute", orch.distribute_pending).result()
        failed = 0
        for name, per_host in results.items():
            for host, outcome in per_host.items():
                mark = "ok" if outcome.ok else f"FAILED ({outcome.error})"
                print(f"{name} -> {host}: {mark}")
                failed += 0 if outcome.ok else 1
        return 1 if failed else 0

    if args.command == "regenerate":
        done = orch.submit("regenerate", lambda: orch.regenerate(args.name)).result()
        if not done:
            print(f"unknown component: {args.name}", file=sys.stderr)
        return 0 if done else 1

    if args.command == "import":
        imported = orch.submit("import", orch.import_existing).result()
        print(f"imported: {', '.join(imported) or 'nothing'}")
        if args.kubeconfig:
            kc = import_kubeconfig(pathlib.Path(args.kubeconfig))
            print(json.dumps({"clusters": kc.clusters, "users": kc.users, "contexts": kc.contexts,
                              "current_context": kc.current_context}, indent=2))
        return 0

    if args.command == "verify":
        outcomes = orch.verify_remote(args.host) if args.host else orch.verify()
        for name, o in sorted(outcomes.items()):
            print(f"{name}: {'ok' if o.ok else 'FAILED ' + (o.error or '')}")
        orch.tracker.save(orch.layout.status_file)
        return 0 if all(o.ok for o in outcomes.values()) else 1

    if args.command == "status":
        print(json.dumps(orch.tracker.to_document(), indent=2))
        return 0

    if args.command == "trust":
        results = orch.refresh_trust()
        orch.trust.store.export(orch.layout.trust_store_file)
        for host, ok in sorted(results.items()):
            print(f"{host}: {'trusted' if ok else 'UNTRUSTED'}")
        return 0 if all(results.values()) else 1

    raise ValueError(f"unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = _create_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "serve":
        from .server import main as serve
        serve()
        return 0

    settings = Settings.from_env()
    setup_logging(settings)
    orch = Orchestrator(settings)
    try:
        orch.load_state()
        if args.command in ("automate-all", "distribute"):
            problems = orch.cluster.validate_ready()
            if problems:
                for p in problems:
                    log.error("cluster config: %s", p)
                return 1
            if not args.skip_ssh_check:
                orch.startup_check()
        return _execute_command(args, orch)
    except ControlPlaneUnreachable as e:
        log.error("%s", e)
        return 2
    except CertOperationError as e:
        log.error("%s failed: %s", args.command, e)
        return 1
    finally:
        orch.shutdown()


if __name__ == "__main__":
    sys.exit(main())
