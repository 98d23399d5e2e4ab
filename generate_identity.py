import argparse
import os
from pathlib import Path

from wssrelay.identity import generate_identity

# Quick one-off generator for a self-signed server identity.
# - RSA-4096 + SHA-256 self-signed certificate, valid for --days.
# - Written as a PKCS#12 bundle, the format `wssrelay.run --identity` expects.
# - Fine for local testing; browsers will (rightly) not trust it.

p = argparse.ArgumentParser(description="Write a self-signed PKCS#12 identity for wssrelay.")
p.add_argument("--cn", default="localhost", help="Certificate common name / DNS name")
p.add_argument("--password", default=os.environ.get("WSSRELAY_IDENTITY_PASSWORD", ""))
p.add_argument("--out", default="identity.p12")
p.add_argument("--days", type=int, default=365)
args = p.parse_args()

# 1) Build key + certificate and pack them into a bundle.
bundle = generate_identity(common_name=args.cn, password=args.password, days=args.days)

# 2) Write it owner-readable only; it contains the private key.
out = Path(args.out)
fd = os.open(out, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
with os.fdopen(fd, "wb") as f:
    f.write(bundle)

print(f"Wrote identity for CN={args.cn} to {out}")
if not args.password:
    print("Note: bundle has no password; start the relay with --identity-password ''")
