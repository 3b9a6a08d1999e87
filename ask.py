import sys
import logging

from rag_answer import render_answer
from rag_demo import (
    KnowledgeBase,
    QueryOutcome,
    RAGError,
    Settings,
    build_knowledge_base,
    configure_logging,
)
from rag_sources import load_documents

logger = logging.getLogger(__name__)

EXIT_WORDS = ("quit", "exit")


class QueryConsole:
    """
    Interactive question loop. Blank lines re-prompt, "quit"/"exit" (any
    case) or end of input stops, anything else is retrieved and answered.
    A failed query is reported and the loop keeps going.
    """

    def __init__(self, kb: KnowledgeBase, top_k: int = 3, min_score: float = 0.5,
                 input_fn=None, out=None, err=None):
        self.kb = kb
        self.top_k = top_k
        self.min_score = min_score
        self.input_fn = input_fn if input_fn is not None else input
        self.out = out if out is not None else sys.stdout
        self.err = err if err is not None else sys.stderr

    def _print(self, *args):
        print(*args, file=self.out)

    def display_welcome(self):
        self._print("\n🎯 RAG System Ready!")
        self._print("Ask questions about AI, ML, Data Science, or related topics.")
        self._print("Type 'quit' or 'exit' to stop.\n")

    def run(self):
        self.display_welcome()
        while True:
            try:
                line = self.input_fn("❓ Your question: ")
            except (EOFError, KeyboardInterrupt):
                self._print()
                line = "quit"

            if not self.handle_line(line):
                break

    def handle_line(self, line: str) -> bool:
        """Process one input line; returns False once the loop should stop."""
        query = line.strip()
        if query.lower() in EXIT_WORDS:
            self._print("👋 Goodbye!")
            return False
        if not query:
            return True

        outcome = self.kb.query(query, k=self.top_k, min_score=self.min_score)
        self.show(outcome)
        return True

    def show(self, outcome: QueryOutcome):
        if outcome.status == "error":
            print(f"❌ Error processing query: {outcome.error}", file=self.err)
            return
        if outcome.status == "empty":
            self._print("🤷 No relevant documents found for your query.\n")
            return

        self._print("\n📄 Retrieved Information:")
        self._print("=" * 51)
        for i, m in enumerate(outcome.matches, 1):
            self._print(f"📌 Result {i} (Similarity: {m.score:.3f}):")
            self._print(m.text)
            self._print()

        self._print("🤖 Generated Answer:")
        self._print("-" * 30)
        self._print(render_answer(outcome.question, outcome.matches))
        self._print()


def main():
    try:
        settings = Settings.from_env()
        configure_logging(settings.log_level)

        print("🚀 Initializing RAG System...")
        kb = build_knowledge_base(settings)
        print("✅ Embedding model loaded")
        print(f"✅ Connected to {settings.vector_backend} vector store")

        print("📚 Adding documents to knowledge base...")
        report = kb.ingest(load_documents(settings))
        print(f"✅ Added {report.documents} documents ({report.segments} segments) to knowledge base")
    except RAGError as e:
        logger.debug("Startup failed", exc_info=True)
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)

    QueryConsole(kb, top_k=settings.top_k, min_score=settings.min_score).run()


if __name__ == "__main__":
    main()
