import json
import sys

from dotenv import load_dotenv

load_dotenv(override=True)

from devproxy.config import ConfigError, load_config
from devproxy.logger import configure_logging, get_logger
from devproxy.policy import create_backend_proxy_from_config
from devproxy.server import run_cert_server
from devproxy.tls import CertificateError

log = get_logger()


def main():
    try:
        config = load_config()
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        return 2
    configure_logging(config.debug)

    if not config.backend:
        log.error("PROXY_BACKEND is required, e.g. PROXY_BACKEND=https://staging.example.com")
        return 2

    # this process only prepares the policy, so cert generation is always on
    # unless running insecure; the distribution server runs in the foreground
    config.generate_cert = True
    serve_certs, config.cert_server = config.cert_server, False

    try:
        policy = create_backend_proxy_from_config(config)
    except CertificateError as e:
        log.error("Certificate bootstrap failed: %s", e)
        return 1

    summary = {
        "target": policy.target,
        "paths": list(policy.routes.paths),
        "subpaths": list(policy.routes.subpaths),
        "protocolRewrite": policy.protocol_rewrite,
        "originRewrites": list(policy.origin_rewrites),
    }
    if policy.cert_files:
        summary["ssl"] = {k: str(v) for k, v in vars(policy.cert_files).items()}
    print(json.dumps(summary, indent=2))

    if serve_certs and policy.cert_files:
        run_cert_server(
            policy.cert_files.ca_cert,
            host=config.cert_server_host,
            port=config.cert_server_port,
            log_path=config.log_path,
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
