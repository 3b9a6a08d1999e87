# ingest.py
import sys

from rag_demo import RAGError, Settings, build_knowledge_base, configure_logging
from rag_sources import load_documents


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        rag = build_knowledge_base(settings)

        # Optional: wipe the index first with: python ingest.py --reset
        if "--reset" in argv:
            rag.reset()
            print("Index reset.")

        result = rag.ingest(load_documents(settings))
    except RAGError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)

    print("Ingestion completed!")
    print(f"{result.documents} documents, {result.segments} segments, {rag.count()} entries in store")
    for src in rag.list_sources():
        print(f"  {src['source']}: {src['chunks']} chunks (last indexed {src['latest_timestamp']})")


if __name__ == "__main__":
    main()
