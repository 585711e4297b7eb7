import argparse
import asyncio
import json
import logging
import tempfile
from pathlib import Path

from backend.meeting_history import MeetingHistory
from backend.pipeline import PipelineOptions, PipelineOrchestrator
from backend.processing_queue import ProcessingQueue
from backend.suggestion_batcher import SuggestionBatcher
from backend.suggestions import SuggestionService
from backend.transcription import MockTranscriptionBackend, TranscriptionGateway
from backend.vad import VoiceActivityAnalyzer

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Debug")


class _PrintSink:
    async def emit(self, event: str, payload: dict) -> None:
        print(f"[{event}] {json.dumps(payload, default=str)}")


async def _run(paths: list[Path], *, max_concurrent: int, max_queue_size: int) -> None:
    with tempfile.TemporaryDirectory() as tmp:
        orchestrator = PipelineOrchestrator(
            vad=VoiceActivityAnalyzer(),
            transcription=TranscriptionGateway(MockTranscriptionBackend(), min_file_bytes=0),
            batcher=SuggestionBatcher(),
            suggestions=SuggestionService(None),
            history=MeetingHistory(Path(tmp) / "meetings"),
            queue=ProcessingQueue(max_concurrent=max_concurrent, max_queue_size=max_queue_size),
            # Never delete the caller's files.
            options=PipelineOptions(delete_after_transcription=False),
        )
        await orchestrator.start_session(_PrintSink())
        tasks = [orchestrator.handle_segment(p) for p in paths]
        await asyncio.gather(*(t for t in tasks if t is not None))
        summary = await orchestrator.stop_session()
        logger.info(f"Session summary: {json.dumps((summary or {}).get('stats'), default=str)}")


if __name__ == "__main__":
    # Feed local WAV files through the pipeline with mock backends.
    parser = argparse.ArgumentParser(description="Run WAV segments through the pipeline offline.")
    parser.add_argument("wav", nargs="+", help="WAV segment files, processed in order.")
    parser.add_argument("--max-concurrent", type=int, default=2)
    parser.add_argument("--max-queue-size", type=int, default=10)
    args = parser.parse_args()
    asyncio.run(
        _run(
            [Path(p) for p in args.wav],
            max_concurrent=args.max_concurrent,
            max_queue_size=args.max_queue_size,
        )
    )
