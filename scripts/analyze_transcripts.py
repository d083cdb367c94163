"""Analyze plain-text call transcripts without the database or the transcription provider.

Each transcript is segmented, PII-masked (unless --no-mask) and analyzed; the
result is written next to the others as <name>_analysis.json.

Usage:
    python scripts/analyze_transcripts.py data/transcripts/ [--output-dir data/processed] [--no-mask]
    python scripts/analyze_transcripts.py call_0142.txt call_0143.txt
"""

import sys
import json
import time
import uuid
import argparse
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
load_dotenv()

from loguru import logger

from analysis.call_analysis import AnalysisService
from analysis.pii_masking import MASKING_FAILED_MODEL, mask_segments
from analysis.segmentation import segment_transcript, transcript_duration
from config.schemas import CallInfo, Transcription, TranscriptionMetadata
from pipeline.projector import project_derived_entities
from services.llm.client import CompletionClient, build_analysis_client, build_masking_client


def find_transcripts(inputs: list[str]) -> list[Path]:
    """Expand files and directories into a sorted list of .txt transcripts."""
    files = []
    for item in inputs:
        path = Path(item)
        if path.is_dir():
            files.extend(sorted(path.glob("*.txt")))
        elif path.suffix == ".txt" and path.exists():
            files.append(path)
        else:
            logger.warning(f"Skipping {item} (not a .txt file or directory)")
    return files


def analyze_transcript_file(
    path: Path,
    analysis_client: CompletionClient,
    masking_client: CompletionClient | None,
    output_dir: Path,
) -> dict:
    """Analyze one transcript file and write <stem>_analysis.json. Returns a summary row."""
    call_id = path.stem
    text = path.read_text(encoding="utf-8")
    segments = segment_transcript(text)

    masked_text, masked_segments, masking_metadata = None, None, None
    if masking_client is not None:
        masked = mask_segments(segments, masking_client)
        masked_text, masked_segments = masked.masked_text, masked.masked_segments
        masking_metadata = masked.masking_metadata

    transcription = Transcription(
        id=str(uuid.uuid4()),
        call_id=call_id,
        full_text=text,
        segments=segments,
        masked_full_text=masked_text,
        masked_segments=masked_segments,
        metadata=TranscriptionMetadata(
            transcription_model="text-file",
            pii_masking_applied=(
                masking_metadata is not None and masking_metadata.model_used != MASKING_FAILED_MODEL
            ),
            pii_masking_metadata=masking_metadata,
        ),
    )
    call = CallInfo(id=call_id, duration=transcript_duration(segments))

    outcome = AnalysisService(analysis_client).analyze(transcription, call)
    drug_records, flag_records = project_derived_entities(outcome.analysis)

    output_path = output_dir / f"{call_id}_analysis.json"
    with open(output_path, "w") as f:
        json.dump({
            "call_id": call_id,
            "state": outcome.state.value,
            "analysis": outcome.analysis.model_dump(mode="json"),
            "drug_mentions": [d.model_dump(mode="json") for d in drug_records],
            "flags": [r.model_dump(mode="json") for r in flag_records],
            "masking": masking_metadata.model_dump(mode="json") if masking_metadata else None,
        }, f, indent=2)
    logger.info(f"[{call_id}] Output saved to {output_path}")

    return {
        "call_id": call_id,
        "segments": len(segments),
        "state": outcome.state.value,
        "model": outcome.analysis.metadata.model,
        "sentiment": outcome.analysis.sentiment.overall_score,
        "drugs": len(drug_records),
        "flags": len(flag_records),
        "status": "success",
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Analyze plain-text call transcripts")
    parser.add_argument("inputs", nargs="+", help="Transcript .txt files or directories containing them")
    parser.add_argument("--output-dir", default="data/processed", help="Output directory")
    parser.add_argument("--no-mask", action="store_true", help="Skip PII masking")
    args = parser.parse_args(argv)

    files = find_transcripts(args.inputs)
    if not files:
        logger.error("No transcripts found")
        return 1
    logger.info(f"Found {len(files)} transcripts to analyze")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    analysis_client = build_analysis_client()
    masking_client = None if args.no_mask else build_masking_client()

    results = []
    total_start = time.time()
    for i, path in enumerate(files):
        logger.info(f"Analyzing {i+1}/{len(files)}: {path.name}")
        start = time.time()
        try:
            row = analyze_transcript_file(path, analysis_client, masking_client, output_dir)
        except (OSError, ValueError) as e:
            logger.error(f"FAILED {path.name}: {e}")
            row = {"call_id": path.stem, "status": "failed", "error": str(e)}
        row["processing_time_s"] = round(time.time() - start, 1)
        results.append(row)

    total_elapsed = time.time() - total_start

    print(f"\n{'='*80}")
    print(f"ANALYSIS COMPLETE — {len(results)} transcripts in {total_elapsed:.0f}s")
    print(f"{'='*80}")
    print(f"{'Call':<30} {'State':>9} {'Model':>15} {'Sent':>5} {'Drugs':>5} {'Status':>7}")
    print("-" * 80)
    for r in results:
        print(
            f"{r['call_id'][:29]:<30} {r.get('state', '?'):>9} {r.get('model', '?')[:15]:>15} "
            f"{str(r.get('sentiment', '?')):>5} {str(r.get('drugs', '?')):>5} {r['status']:>7}"
        )

    succeeded = sum(1 for r in results if r["status"] == "success")
    print(f"\nSuccess: {succeeded}/{len(results)}")
    return 0 if succeeded == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
