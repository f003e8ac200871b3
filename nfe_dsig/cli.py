#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
nfe-dsig - Herramientas de línea de comando para firmas XMLDSig de NF-e.

Uso:
  nfe-dsig verify  /path/al.xml [--no-trust] [--json]
  nfe-dsig inspect /path/al.xml [--sha256]
  nfe-dsig c14n    /path/al.xml [--exclusive] [--with-comments] [--id ID]

Exit codes:
  0 = OK
  2 = FAIL
"""

import argparse
import json
import os
import sys
from typing import List, Optional

from .canonicalizer import canonicalize
from .config import METHOD_EXCLUSIVE, METHOD_INCLUSIVE, CanonicalizationConfig, SigningConfig, ValidationConfig, get_dsig_config
from .exceptions import DSigError, ValidationError
from .pipeline_logger import get_logger
from .sefaz_validation import inspect_signature
from .signature_validator import SignatureValidator
from .xml_utils import IdIndex, parse_xml


def _read(path: str) -> Optional[bytes]:
    xml_path = os.path.abspath(os.path.expanduser(path))
    if not os.path.isfile(xml_path):
        print(f"❌ No existe el archivo: {xml_path}", file=sys.stderr)
        return None
    with open(xml_path, "rb") as f:
        return f.read()


def _cmd_verify(args) -> int:
    data = _read(args.xml_path)
    if data is None:
        return 2

    base = get_dsig_config().validation
    config = ValidationConfig(
        clock_skew=base.clock_skew,
        require_trusted_chain=base.require_trusted_chain and not args.no_trust,
        id_attributes=base.id_attributes,
    )
    plog = get_logger("nfe_dsig.cli")
    with plog.log_context("verify", path=args.xml_path):
        result = SignatureValidator(config).validate(data)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str))
    else:
        for ref in result.references:
            status = "OK" if ref.digest_valid else "FAIL"
            print(f"Reference {ref.uri or '(documento)'}: digest {status}")
        print(f"SignatureValid:   {result.signature_valid}")
        print(f"CertificateValid: {result.certificate_valid}")
        print(f"TrustedChain:     {result.trusted_chain}")
        for err in result.errors:
            print(f"  ERROR: {err}")
        for warn in result.warnings:
            print(f"  WARN:  {warn}")
        print("✅ FIRMA VÁLIDA" if result.is_valid else "❌ FIRMA INVÁLIDA")
    return 0 if result.is_valid else 2


def _cmd_inspect(args) -> int:
    data = _read(args.xml_path)
    if data is None:
        return 2
    expected = SigningConfig.sha256() if args.sha256 else SigningConfig.sha1()
    try:
        report = inspect_signature(data, expected)
    except DSigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    print(report.render())
    return 0 if report.is_valid else 2


def _cmd_c14n(args) -> int:
    data = _read(args.xml_path)
    if data is None:
        return 2
    config = CanonicalizationConfig(
        method=METHOD_EXCLUSIVE if args.exclusive else METHOD_INCLUSIVE,
        inclusive_prefixes=tuple(args.prefixes.split()) if args.exclusive and args.prefixes else (),
        with_comments=args.with_comments,
    )
    try:
        root = parse_xml(data)
        node = root
        if args.id:
            node = IdIndex(root).get(args.id)
            if node is None:
                raise ValidationError("No se encontró elemento con ese Id", "id", args.id)
        output = canonicalize(node, config)
    except DSigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    sys.stdout.write(output.decode("utf-8"))
    sys.stdout.flush()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nfe-dsig",
        description="Verificación, diagnóstico y canonicalización de firmas XMLDSig (NF-e)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_verify = sub.add_parser("verify", help="Verifica digest, firma y certificado")
    p_verify.add_argument("xml_path", help="Ruta al XML firmado")
    p_verify.add_argument("--no-trust", action="store_true", help="No exigir cadena ICP-Brasil (solo warning)")
    p_verify.add_argument("--json", action="store_true", help="Salida JSON")
    p_verify.set_defaults(func=_cmd_verify)

    p_inspect = sub.add_parser("inspect", help="Diagnóstico estructural de la Signature")
    p_inspect.add_argument("xml_path", help="Ruta al XML firmado")
    p_inspect.add_argument("--sha256", action="store_true", help="Esperar perfil SHA-256 en lugar de SHA-1")
    p_inspect.set_defaults(func=_cmd_inspect)

    p_c14n = sub.add_parser("c14n", help="Imprime la forma canónica del documento o de un elemento")
    p_c14n.add_argument("xml_path", help="Ruta al XML")
    p_c14n.add_argument("--exclusive", action="store_true", help="C14N exclusiva")
    p_c14n.add_argument("--prefixes", default="", help="InclusiveNamespaces PrefixList (solo con --exclusive)")
    p_c14n.add_argument("--with-comments", action="store_true", help="Conservar comentarios")
    p_c14n.add_argument("--id", help="Canonicalizar solo el elemento con este Id")
    p_c14n.set_defaults(func=_cmd_c14n)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except DSigError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
