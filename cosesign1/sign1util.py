# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

import argparse
import sys

from loguru import logger as LOG

from cosesign1.cose import (
    UnpackedMessage,
    create_cose_sign1,
    print_chain,
    unpack_and_validate_cose_sign1,
)
from cosesign1.didx509 import make_did, resolve
from cosesign1.errors import CoseSign1Error
from cosesign1.signing import SaltType, algorithm_from_string

_DESCRIPTION = """Create and check COSE Sign1 claims documents and did:x509 identifiers

Subcommands:
  create    sign a payload with the leaf key of a certificate chain
  check     verify a document, optionally resolving a did:x509 against its chain
  print     verify a document and log all of its fields
  leaf      extract the leaf public key and certificate of a document
  did:x509  build a did:x509 from a certificate chain
  chain     print the certificate chain embedded in a document
"""


def read_blob(path: str) -> bytes:
    if path == "-":
        return sys.stdin.buffer.read()
    with open(path, "rb") as f:
        return f.read()


def read_string(path: str) -> str:
    return read_blob(path).decode("utf-8")


def write_blob(path: str, data: bytes):
    if path == "-":
        sys.stdout.buffer.write(data)
        return
    with open(path, "wb") as f:
        f.write(data)


def write_string(path: str, data: str):
    write_blob(path, data.encode("utf-8"))


def _log_unpacked(unpacked: UnpackedMessage):
    LOG.info(f"iss: {unpacked.issuer or ''}")
    LOG.info(f"feed: {unpacked.feed or ''}")
    LOG.info(f"cty: {unpacked.content_type}")
    LOG.info(f"pubkey: {unpacked.leaf_public_key_b64}")
    LOG.info(f"pubcert: {unpacked.leaf_cert_b64}")
    LOG.info(f"payload:\n{unpacked.payload.decode('utf-8', errors='replace')}")


def check(
    input_path, public_key_path=None, root_path=None, chain_path=None, did=None, verbose=False
) -> UnpackedMessage:
    unpacked = unpack_and_validate_cose_sign1(
        read_blob(input_path),
        public_key_pem=read_string(public_key_path) if public_key_path else None,
        root_ca_pem=read_string(root_path) if root_path else None,
        verbose=verbose,
    )
    LOG.success(f"{input_path} passed COSE Sign1 checks")
    if verbose:
        _log_unpacked(unpacked)

    if did:
        chain_pem = read_string(chain_path) if chain_path else unpacked.chain_pem
        document = resolve(chain_pem, did, ignore_expiry=True, verbose=verbose)
        LOG.success(f"DID resolved:\n{document.dumps()}")
    return unpacked


def _create(args):
    raw = create_cose_sign1(
        payload=read_blob(args.claims),
        issuer=args.issuer,
        feed=args.feed,
        content_type=args.content_type,
        chain_pem=read_string(args.chain),
        key_pem=read_string(args.key),
        salt=SaltType(args.salt),
        algorithm=algorithm_from_string(args.algo),
        verbose=args.verbose,
    )
    write_blob(args.out, raw)
    LOG.info(f"Wrote {len(raw)} bytes to {args.out}")


def _check(args):
    check(args.input, args.pub, args.root, args.chain, args.did, args.verbose)


def _print(args):
    check(args.input, root_path=args.root, verbose=True)


def _leaf(args):
    unpacked = check(args.input, verbose=args.verbose)
    write_string(args.keyout, unpacked.leaf_public_key_b64)
    write_string(args.certout, unpacked.leaf_cert_b64)
    LOG.info(f"Wrote leaf public key to {args.keyout} and certificate to {args.certout}")


def _did_x509(args):
    did = make_did(
        args.fingerprint_algorithm,
        args.index,
        read_string(args.chain),
        args.policy,
        strict=True,
        verbose=args.verbose,
    )
    print(did)


def _chain(args):
    print(print_chain(read_blob(args.input)), end="")


def _parser():
    parser = argparse.ArgumentParser(
        prog="sign1util",
        description=_DESCRIPTION,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a COSE Sign1 document")
    create.add_argument("--claims", default="fragment.rego", help="Payload file")
    create.add_argument(
        "--content-type",
        default="application/unknown+json",
        help="Content type, e.g. application/json",
    )
    create.add_argument("--chain", default="chain.pem", help="Certificate chain (PEM)")
    create.add_argument(
        "--key",
        default="key.pem",
        help="Private key of the leaf of the chain (PEM)",
    )
    create.add_argument("--out", default="out.cose", help="Output file, or '-' for stdout")
    create.add_argument(
        "--salt",
        default=SaltType.RAND.value,
        choices=[s.value for s in SaltType],
        help="Signature randomness, zero makes signatures reproducible",
    )
    create.add_argument("--algo", default="PS384", help="PS256, PS384, ES256, EdDSA etc.")
    create.add_argument("--issuer", default="", help="The party making the claims")
    create.add_argument(
        "--feed",
        default="",
        help="Identifier for an artifact within the scope of an issuer",
    )
    create.add_argument("--verbose", action="store_true", help="Verbose output")
    create.set_defaults(func=_create)

    check_ = subparsers.add_parser("check", help="Check a COSE Sign1 document")
    check_.add_argument("--in", dest="input", default="input.cose", help="Input file")
    check_.add_argument("--pub", default=None, help="Public key to check with (PEM)")
    check_.add_argument("--root", default=None, help="Trusted root CA certificate (PEM)")
    check_.add_argument(
        "--chain",
        default=None,
        help="Certificate chain to resolve the DID against (PEM), defaults to the embedded chain",
    )
    check_.add_argument("--did", default=None, help="did:x509 to resolve")
    check_.add_argument("--verbose", action="store_true", help="Verbose output")
    check_.set_defaults(func=_check)

    print_ = subparsers.add_parser("print", help="Check and print a COSE Sign1 document")
    print_.add_argument("--in", dest="input", default="input.cose", help="Input file")
    print_.add_argument("--root", default=None, help="Trusted root CA certificate (PEM)")
    print_.set_defaults(func=_print)

    leaf = subparsers.add_parser("leaf", help="Extract the leaf key and certificate")
    leaf.add_argument("--in", dest="input", default="input.cose", help="Input file")
    leaf.add_argument("--keyout", default="leafkey.pem", help="Leaf public key output file")
    leaf.add_argument("--certout", default="leafcert.pem", help="Leaf certificate output file")
    leaf.add_argument("--verbose", action="store_true", help="Verbose output")
    leaf.set_defaults(func=_leaf)

    did_x509 = subparsers.add_parser("did:x509", help="Build a did:x509")
    did_x509.add_argument(
        "--fingerprint-algorithm",
        default="sha256",
        choices=["sha256", "sha384", "sha512"],
        help="Hash algorithm for the certificate fingerprint",
    )
    did_x509.add_argument("--chain", default="chain.pem", help="Certificate chain (PEM)")
    did_x509.add_argument(
        "-i",
        dest="index",
        type=int,
        default=1,
        help="Index of the fingerprinted certificate in the chain",
    )
    did_x509.add_argument(
        "--policy",
        default="CN",
        help="CN, EKU, or a literal policy such as subject:O:Contoso",
    )
    did_x509.add_argument("--verbose", action="store_true", help="Verbose output")
    did_x509.set_defaults(func=_did_x509)

    chain = subparsers.add_parser("chain", help="Print the embedded certificate chain")
    chain.add_argument("--in", dest="input", default="input.cose", help="Input file")
    chain.set_defaults(func=_chain)

    return parser


def main(argv=None):
    args = _parser().parse_args(argv)

    LOG.remove()
    LOG.add(
        sys.stderr,
        format="<level>{message}</level>",
        level="DEBUG" if getattr(args, "verbose", False) else "INFO",
    )

    try:
        args.func(args)
    except (CoseSign1Error, OSError) as e:
        LOG.error(f"{args.command} failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
