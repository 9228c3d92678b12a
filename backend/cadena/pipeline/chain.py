"""Ownership chain builder and sequence-gap detection.

Walks transfer documents in date order and places each one relative to the
current holder:

  1. continuation  emisor == current holder       → OK / ENDORSEMENT / REINVOICE-TRANSFER
  2. return        emisor seen before, not holder  → RETURN (if legitimate)
  3. break         anything left after one pass    → BREAK (position None)

Continuation MUST be tested before return.  In A→B→A→C the last transfer
has an emisor that was seen before, yet it is the current holder selling
on; tagging it RETURN would be wrong.
"""

import logging
from typing import Optional

from cadena.config import RETURN_POLICY, TRACE_ENABLED
from cadena.pipeline.models import (
    Gap,
    LinkState,
    NormalizedDocument,
    OwnershipLink,
    ReturnPolicy,
)

logger = logging.getLogger(__name__)


def _trace(msg: str):
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] {msg}")


def _continuation_state(doc: NormalizedDocument) -> LinkState:
    if doc.kind == "endorsement":
        return LinkState.ENDORSEMENT
    if doc.kind == "reinvoice":
        return LinkState.REINVOICE_TRANSFER
    return LinkState.OK


def _validate_return(doc: NormalizedDocument, chain: list[OwnershipLink],
                     seen_rfcs: set, current_holder: Optional[str],
                     policy: ReturnPolicy) -> bool:
    """Decide whether a reappearing emisor is a legitimate RETURN."""
    if doc.emisor_rfc not in seen_rfcs:
        return False
    if doc.emisor_rfc == current_holder:
        return False

    chain_vins = {link.document.vin for link in chain if link.document.vin}
    if doc.vin and chain_vins and doc.vin not in chain_vins:
        _trace(f"RETURN rejected {doc.file_id}: VIN {doc.vin} not in chain")
        return False

    last = chain[-1] if chain else None
    if last is not None and last.emisor_rfc and last.emisor_rfc == doc.receptor_rfc:
        # Direct back-and-forth between the same two RFCs
        if policy == ReturnPolicy.REJECT_PING_PONG:
            _trace(f"RETURN rejected {doc.file_id}: ping-pong {doc.emisor_rfc}→{doc.receptor_rfc}")
            return False
    return True


def build_ownership_chain(documents: list[NormalizedDocument],
                          origin: NormalizedDocument,
                          *, return_policy=None) -> list[OwnershipLink]:
    """Build the ordered ownership chain.

    Args:
        documents: transfer documents sorted ascending by date (undated last).
            May include *origin*; it is placed once, at position 1.
        origin: the NUEVO document that opens the chain.
        return_policy: :class:`ReturnPolicy` or its string value; defaults to
            ``CADENA_RETURN_POLICY``.

    Returns:
        Placed links in order, followed by BREAK links (position None).
    """
    policy = ReturnPolicy.parse(return_policy if return_policy is not None else RETURN_POLICY)

    chain: list[OwnershipLink] = [
        OwnershipLink(document=origin, state=LinkState.OK, position=1, is_origin=True)
    ]
    seen_rfcs = {rfc for rfc in (origin.emisor_rfc, origin.receptor_rfc) if rfc}
    processed = {id(origin)}
    current_holder = origin.receptor_rfc
    position = 2

    for doc in documents:
        if id(doc) in processed:
            continue
        emisor = doc.emisor_rfc
        if not emisor:
            continue

        if emisor == current_holder:
            chain.append(OwnershipLink(document=doc, state=_continuation_state(doc), position=position))
        elif emisor in seen_rfcs and _validate_return(doc, chain, seen_rfcs, current_holder, policy):
            chain.append(OwnershipLink(document=doc, state=LinkState.RETURN, position=position))
        else:
            continue

        _trace(f"CHAIN pos={position} {chain[-1].state.value} {emisor}→{doc.receptor_rfc} ({doc.file_id})")
        position += 1
        processed.add(id(doc))
        if doc.receptor_rfc:
            seen_rfcs.add(doc.receptor_rfc)
        current_holder = doc.receptor_rfc

    for doc in documents:
        if id(doc) not in processed:
            chain.append(OwnershipLink(document=doc, state=LinkState.BREAK, position=None))

    breaks = sum(1 for link in chain if link.state == LinkState.BREAK)
    logger.info(f"Chain built: {position - 1} placed link(s), {breaks} break(s), policy={policy.value}")
    return chain


def placed_links(chain: list[OwnershipLink]) -> list[OwnershipLink]:
    return [link for link in chain if link.placed]


# ═══════════════════════════════════════════════════
# SEQUENCE GAPS
# ═══════════════════════════════════════════════════

def _party_label(nombre: Optional[str], rfc: Optional[str]) -> str:
    return f"\"{nombre or 'Sin nombre'}\" (RFC: {rfc or 'N/A'})"


def detect_sequence_gaps(chain: list[OwnershipLink],
                         certificates: Optional[list[NormalizedDocument]] = None) -> dict:
    """Find missing links, returns and orphan documents.

    Returns:
        ``{"has_gaps", "has_retornos", "gaps": [Gap], "retornos": [dict]}``
    """
    gaps: list[Gap] = []
    retornos: list[dict] = []
    sequential = placed_links(chain)

    for current, nxt in zip(sequential, sequential[1:]):
        if nxt.state == LinkState.RETURN:
            retornos.append({
                "position": nxt.position,
                "description": (f"{nxt.document.emisor_nombre or nxt.emisor_rfc} ({nxt.emisor_rfc}) "
                                f"recuperó el vehículo"),
                "previous_owner": current.document.receptor_nombre,
                "previous_rfc": current.receptor_rfc,
                "returned_to": nxt.emisor_rfc,
                "returned_to_name": nxt.document.emisor_nombre,
                "new_owner_rfc": nxt.receptor_rfc,
                "fecha": nxt.fecha,
                "file_id": nxt.document.file_id,
            })
            continue
        if nxt.state == LinkState.ENDORSEMENT:
            continue
        if current.receptor_rfc != nxt.emisor_rfc:
            cur, nd = current.document, nxt.document
            gaps.append(Gap(
                kind="sequence_gap",
                severity="high",
                description=(f"Se esperaba que {_party_label(cur.receptor_nombre, cur.receptor_rfc)} "
                             f"fuera el emisor de la siguiente transferencia, pero se encontró "
                             f"{_party_label(nd.emisor_nombre, nd.emisor_rfc)}"),
                document_ids=[d for d in (cur.file_id, nd.file_id) if d],
                details={
                    "gap_position": f"Entre posición {current.position} y {nxt.position}",
                    "expected_emisor": cur.receptor_rfc,
                    "expected_nombre_emisor": cur.receptor_nombre,
                    "found_emisor": nd.emisor_rfc,
                    "found_nombre_emisor": nd.emisor_nombre,
                    "previous_document": {"file_id": cur.file_id, "fecha": cur.fecha},
                    "next_document": {"file_id": nd.file_id, "fecha": nd.fecha},
                },
            ))

    orphans = [link for link in chain if link.state == LinkState.BREAK]
    if orphans:
        gaps.append(Gap(
            kind="orphan_document",
            severity="high",
            description=(f"Se encontraron {len(orphans)} documento(s) que no forman parte "
                         f"de la secuencia principal"),
            document_ids=[o.document.file_id for o in orphans if o.document.file_id],
            details={
                "type": "orphan_documents",
                "gap_position": "Documentos sin conexión",
                "orphan_documents": [{
                    "file_id": o.document.file_id,
                    "document_type": o.document.kind,
                    "fecha": o.fecha,
                    "rfc_emisor": o.emisor_rfc,
                    "nombre_emisor": o.document.emisor_nombre,
                    "rfc_receptor": o.receptor_rfc,
                    "nombre_receptor": o.document.receptor_nombre,
                } for o in orphans],
            },
        ))

    if certificates:
        parties = set()
        for link in sequential:
            parties.update(r for r in (link.emisor_rfc, link.receptor_rfc) if r)
        for cert in certificates:
            if not cert.rfc or cert.rfc in parties:
                continue
            gaps.append(Gap(
                kind="orphan_document",
                severity="medium",
                description=(f"El titular de la tarjeta de circulación {_party_label(cert.nombre, cert.rfc)} "
                             f"no aparece en ninguna transferencia de la cadena"),
                document_ids=[cert.file_id] if cert.file_id else [],
                details={
                    "type": "TITULAR_TARJETA_SIN_TRANSFERENCIA",
                    "rfc": cert.rfc,
                    "nombre": cert.nombre,
                    "estado_emisor": cert.estado_emisor,
                    "fecha_expedicion": cert.fecha_expedicion,
                },
            ))

    _trace(f"SEQUENCE gaps={len(gaps)} retornos={len(retornos)}")
    return {
        "has_gaps": bool(gaps),
        "has_retornos": bool(retornos),
        "gaps": gaps,
        "retornos": retornos,
    }
