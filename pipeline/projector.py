"""Derived-entity projection — expand one Analysis into drug-mention and flag rows.

Pure: builds records only. Writing them (delete-then-insert, atomically) is
AnalysisRepository.replace_analysis.
"""

import uuid

from config.schemas import Analysis, CallFlagRecord, DrugMentionRecord


def project_drug_mentions(analysis: Analysis) -> list[DrugMentionRecord]:
    return [
        DrugMentionRecord(
            id=str(uuid.uuid4()),
            call_id=analysis.call_id,
            drug_name=mention.name,
            count=mention.count,
            context=mention.context,
        )
        for mention in analysis.clinical_summary.drug_mentions
    ]


def project_flags(analysis: Analysis) -> list[CallFlagRecord]:
    return [
        CallFlagRecord(
            id=str(uuid.uuid4()),
            call_id=analysis.call_id,
            type=flag.type,
            description=flag.description,
            severity=flag.severity,
        )
        for flag in analysis.flags
    ]


def project_derived_entities(
    analysis: Analysis,
) -> tuple[list[DrugMentionRecord], list[CallFlagRecord]]:
    """One DrugMentionRecord per drug mention, one CallFlagRecord per flag."""
    return project_drug_mentions(analysis), project_flags(analysis)
