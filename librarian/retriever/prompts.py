"""
Prompt building for both generation paths.

The corpus and the users are French-speaking, so the instructions handed to
the models are written in French.
"""

from typing import Any, Dict, List, Optional

from ..common.schemas import Fragment, SourceFile

RULE = "=" * 63

# Grounding rules, always first in the system prompt
GROUNDING_RULES = f"""{RULE}
RÈGLES DE FIABILITÉ (NON NÉGOCIABLES)
{RULE}

1. Tu es un assistant de recherche documentaire. Tu ne connais QUE le
   contenu des documents fournis, rien d'autre.

2. Chaque affirmation factuelle est sourcée au format
   [NomDocument, Page X, Section Y].

3. Si l'information n'est pas dans les documents, réponds exactement :
   "Je n'ai pas trouvé cette information dans les documents disponibles."
   N'invente, ne déduis et ne complète jamais avec des connaissances générales.

4. Si deux passages se contredisent, cite les deux avec leurs sources et
   laisse l'utilisateur trancher.

5. Niveaux hiérarchiques :
   - niveau 0 = RÉSUMÉ généré automatiquement, jamais utilisé seul comme source
   - niveau 1 = TEXTE ORIGINAL, seule source valable pour une citation
   Si tu ne disposes que de résumés, recommande de vérifier le document original.

6. Pour une comparaison, présente les documents côte à côte, cite chaque
   source et signale explicitement ce qui n'est pas mentionné.

7. Pour une question de localisation, ne cite que les zones où l'élément
   est explicitement mentionné. "Sans objet" ou "Néant" est une réponse valable.
{RULE}"""

ANSWER_FORMATS = {
    "paragraph": "Réponds en paragraphes fluides et bien structurés.",
    "list": "Structure ta réponse sous forme de liste à puces.",
    "table": "Présente les informations dans un tableau markdown.",
    "quote": "Cite le texte exact entre guillemets avec sa référence précise.",
}

INTENT_INSTRUCTIONS = {
    "synthesis": "L'utilisateur demande une SYNTHÈSE : dégage les points clés, croise les sources et cite chacune.",
    "factual": "L'utilisateur cherche une INFORMATION PRÉCISE : va droit au but et cite l'article, la page ou la section exacte.",
    "comparison": (
        "L'utilisateur veut COMPARER : analyse point par point les différences entre documents "
        "et ne conclus jamais à l'absence de différence sans vérification."
    ),
    "citation": "L'utilisateur veut un EXTRAIT EXACT : reproduis le texte entre guillemets avec [Document, Page X, Section Y].",
}

IDENTITY_FIELDS = (
    ("market_type", "Type de marché"),
    ("project_type", "Type de projet"),
    ("description", "Description"),
    ("name", "Nom du projet"),
)

CONTEXT_HEADER = f"{RULE}\nEXTRAITS DOCUMENTAIRES (SEULES SOURCES CITABLES)\n{RULE}\n"
CONTEXT_FOOTER = f"\n{RULE}\n"
EMPTY_CONTEXT = "EXTRAITS DOCUMENTAIRES :\nAucun document pertinent trouvé.\n"


def _section(title: str, body: str) -> str:
    return f"{RULE}\n{title}\n{RULE}\n{body}"


def build_system_prompt(
    configured_prompt: Optional[str],
    project_identity: Optional[Dict[str, Any]],
    files: List[SourceFile],
    intent: Optional[str] = None,
    answer_format: Optional[str] = None,
    key_concepts: Optional[List[str]] = None,
    full_document: bool = False,
) -> str:
    """
    Compose the system prompt.

    Order: grounding rules, configured prompt, project identity, citation
    catalog (full-document path only), answer format, key concepts,
    intent instruction. The result is deterministic for identical inputs,
    which the context cache relies on.
    """
    parts = [GROUNDING_RULES]

    if configured_prompt and configured_prompt.strip():
        parts.append(configured_prompt.strip())

    if project_identity:
        details = [
            f"- {label} : {project_identity[key]}"
            for key, label in IDENTITY_FIELDS
            if project_identity.get(key)
        ]
        if details:
            parts.append(_section("PROJET ACTIF", "\n".join(details)))

    if full_document and files:
        catalog = "\n".join(
            f'- ID: "{f.file_id}" | NOM: "{f.original_filename}" | PAGES: {f.total_pages}'
            for f in files
        )
        parts.append(_section(
            "RÈGLES DE CITATION",
            "Pour chaque information citée, utilise ce format :\n"
            '<cite doc="ID_DU_DOCUMENT" page="NUMERO_PAGE">texte ou référence</cite>\n\n'
            f"Documents disponibles :\n{catalog}",
        ))

    if answer_format in ANSWER_FORMATS:
        parts.append(f"FORMAT DEMANDÉ : {ANSWER_FORMATS[answer_format]}")

    if key_concepts:
        parts.append(f"CONCEPTS CLÉS : {', '.join(key_concepts)}")

    if intent in INTENT_INSTRUCTIONS:
        parts.append(f"INTENTION : {INTENT_INSTRUCTIONS[intent]}")

    return "\n\n".join(parts)


def _fragment_label(fragment: Fragment) -> str:
    labels = ["RÉSUMÉ (niveau 0)" if fragment.hierarchy_level == 0 else "TEXTE ORIGINAL (niveau 1)"]
    if fragment.is_child:
        labels.append("enfant")
    if fragment.section_title:
        labels.append(f"Section : {fragment.section_title}")
    if fragment.page:
        labels.append(f"Page : {fragment.page}")
    return " | ".join(labels)


def format_context(fragments: List[Fragment], max_length: int) -> str:
    """
    Build the excerpt block for the bounded-excerpt path.

    Fragments are grouped by owning file, or by layer when they have no
    file. The block never exceeds max_length: a group whose header does not
    fit ends the block, a fragment that does not fit ends its group.
    """
    if not fragments:
        return EMPTY_CONTEXT

    groups: Dict[str, List[Fragment]] = {}
    for fragment in fragments:
        key = fragment.source_file_id or f"layer:{fragment.layer}"
        groups.setdefault(key, []).append(fragment)

    budget = max_length - len(CONTEXT_FOOTER)
    context = CONTEXT_HEADER
    if len(context) > budget:
        return ""

    for key, members in groups.items():
        first = members[0]
        if first.source_file_id:
            name = first.file_original_filename or "Document inconnu"
            header = f'\nDOCUMENT : "{name}" (ID: {first.source_file_id})\n{"-" * 60}\n'
        else:
            header = f"\nCOUCHE : {first.layer}\n{'-' * 60}\n"
        if len(context) + len(header) > budget:
            break
        context += header

        for fragment in members:
            text = f"\n[{_fragment_label(fragment)}]\n{fragment.content}\n"
            if len(context) + len(text) > budget:
                break
            context += text

    return context + CONTEXT_FOOTER


def build_transcript_context(fragments: List[Fragment]) -> str:
    """Secondary text block carrying meeting transcripts; '' when none."""
    if not fragments:
        return ""
    body = "\n\n---\n\n".join(f.content for f in fragments)
    return f"\n{_section('COMPTES-RENDUS DE RÉUNIONS', body)}"
