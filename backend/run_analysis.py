#!/usr/bin/env python3
"""CLI tool to run the ownership-chain analysis on an expediente JSON file.

Usage:
    python run_analysis.py <expediente.json>                      # Pretty print
    python run_analysis.py <expediente.json> --trace              # Run with CADENA_TRACE
    python run_analysis.py <expediente.json> --json               # Output raw JSON
    python run_analysis.py <expediente.json> --as-of 2023-01-01   # Validity on a given date
    python run_analysis.py <expediente.json> --return-policy reject_ping_pong

The file holds ``{"files": [...], "created_at": ..., "active_vehicle": ...}``.
"""

import argparse
import json
import os
import sys
from pathlib import Path

# Ensure the backend package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent))


def load_expediente(path_ref: str) -> dict:
    path = Path(path_ref)
    if not path.exists():
        print(f"Expediente '{path_ref}' not found.")
        sys.exit(1)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        print(f"Expediente '{path_ref}' is not valid JSON: {e}")
        sys.exit(1)


def _print_findings(title: str, findings: list[dict]):
    if not findings:
        return
    print(f"  {title} ({len(findings)})")
    print(f"  {'─' * 60}")
    for f in findings:
        sev = f.get("severity") or f.get("gravedad") or "?"
        print(f"  [{sev.upper():<8}] {f.get('description') or f.get('descripcion')}")
    print()


def run_analysis(expediente: dict, trace: bool = False, output_json: bool = False,
                 as_of: str | None = None, return_policy: str | None = None) -> int:
    """Analyze *expediente* and print the result. Returns a process exit code."""
    if trace:
        os.environ["CADENA_TRACE"] = "1"

    import logging
    if trace:
        logging.basicConfig(level=logging.DEBUG, format="%(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)

    from cadena.pipeline.orchestrator import analyze_ownership_sequence

    result = analyze_ownership_sequence(expediente, as_of=as_of, return_policy=return_policy)

    if output_json:
        print(json.dumps(result, indent=2, default=str, ensure_ascii=False))
        return 0 if result.get("success") else 2

    if not result.get("success"):
        print(f"\n  Analysis failed: {result.get('error')}")
        for d in result.get("details") or []:
            print(f"    {d}")
        print()
        return 2

    meta = result["metadata"]
    print(f"\n{'═' * 70}")
    print(f"  Cadena de propiedad: VIN {result.get('vin') or 'N/A'}  "
          f"({result['totalDocuments']} transferencia(s), {result['totalCertificates']} tarjeta(s))")
    print(f"  Fecha de consulta: {meta['asOf']}  Política de retornos: {meta['returnPolicy']}")
    print(f"{'═' * 70}\n")

    print("  CADENA")
    print(f"  {'─' * 60}")
    for link in result["ownershipChain"]:
        pos = link["position"] if link["position"] is not None else "-"
        print(f"  {pos!s:>3} {link['label']:<14} {link.get('fecha') or 'sin fecha':<12} "
              f"{link.get('rfc_emisor') or '?'} → {link.get('rfc_receptor') or '?'}")
    print()

    seq = result["sequenceAnalysis"]
    _print_findings("HUECOS DE SECUENCIA", seq["gaps"])
    for label, block, key in (
        ("PATRONES SOSPECHOSOS", result.get("patternDetection"), "patterns"),
        ("ANOMALÍAS TEMPORALES", result.get("temporalAnalysis"), "anomalies"),
        ("DUPLICADOS", result.get("duplicateDetection"), "duplicates"),
    ):
        if block:
            _print_findings(label, [f for group in block[key].values() for f in group])
    if result.get("tarjetasAnalysis"):
        _print_findings("COBERTURA DE TARJETAS", result["tarjetasAnalysis"]["gaps"])
    if result.get("crossValidation"):
        _print_findings("VALIDACIÓN CRUZADA", result["crossValidation"]["inconsistencias"])

    summary = result.get("executiveSummary")
    print(f"{'═' * 70}")
    if summary:
        print(f"  Riesgo: {summary['riesgo']['label']}  "
              f"({summary['issues_criticos']} críticos, {summary['issues_altos']} altos, "
              f"{summary['issues_medios']} medios)")
        for rec in summary["recomendaciones"]:
            print(f"    [{rec['prioridad']}] {rec['mensaje']}")
    if meta["unavailableAnalyses"]:
        print(f"  No disponibles: {', '.join(meta['unavailableAnalyses'])}")
    print(f"{'═' * 70}\n")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Cadena CLI: ownership-chain analysis of an expediente",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("expediente", help="Expediente JSON file path")
    parser.add_argument("--trace", action="store_true", help="Enable CADENA_TRACE debug output")
    parser.add_argument("--json", action="store_true", help="Output raw JSON instead of pretty print")
    parser.add_argument("--as-of", dest="as_of", help="Query date for certificate validity (YYYY-MM-DD)")
    parser.add_argument("--return-policy", dest="return_policy",
                        choices=["allow", "reject_ping_pong"], help="Return legitimacy policy")

    args = parser.parse_args()
    expediente = load_expediente(args.expediente)
    sys.exit(run_analysis(expediente, trace=args.trace, output_json=args.json,
                          as_of=args.as_of, return_policy=args.return_policy))


if __name__ == "__main__":
    main()
