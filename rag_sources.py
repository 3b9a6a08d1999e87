# rag_sources.py — where the knowledge base text comes from

import os
from abc import ABC, abstractmethod
from typing import Iterator, List, Optional

from pypdf import PdfReader

from rag_demo import ConfigurationError, Document, Settings, collapse_whitespace


SAMPLE_TEXTS = [
    "Machine learning is a subset of artificial intelligence that focuses on the development of algorithms that can learn and improve from experience without being explicitly programmed. It enables computers to learn automatically without human intervention or assistance.",

    "Artificial intelligence (AI) is the simulation of human intelligence processes by machines, especially computer systems. These processes include learning, reasoning, problem-solving, perception, and language understanding.",

    "Deep learning is a subset of machine learning that uses neural networks with multiple layers (deep neural networks) to model and understand complex patterns in data. It's particularly effective for tasks like image recognition, natural language processing, and speech recognition.",

    "Natural language processing (NLP) is a branch of artificial intelligence that helps computers understand, interpret and manipulate human language. It combines computational linguistics with statistical, machine learning, and deep learning models.",

    "Computer vision is a field of artificial intelligence that enables computers and systems to derive meaningful information from digital images, videos and other visual inputs. It seeks to automate tasks that the human visual system can do.",

    "Neural networks are computing systems inspired by biological neural networks. They consist of interconnected nodes (neurons) that process information using a connectionist approach to computation.",

    "Supervised learning is a machine learning approach where the algorithm learns from labeled training data. The goal is to learn a mapping from inputs to outputs that can generalize to new, unseen data.",

    "Unsupervised learning is a type of machine learning that looks for previously undetected patterns in a data set with no pre-existing labels. It's used for clustering, association rules, and dimensionality reduction.",

    "Reinforcement learning is an area of machine learning where an agent learns to make decisions by taking actions in an environment to maximize cumulative reward. It's inspired by behavioral psychology.",

    "Data science is an interdisciplinary field that uses scientific methods, processes, algorithms and systems to extract knowledge and insights from structured and unstructured data. It combines domain expertise, programming skills, and knowledge of mathematics and statistics.",

    "Big data refers to extremely large datasets that may be analyzed computationally to reveal patterns, trends, and associations, especially relating to human behavior and interactions. It's characterized by volume, velocity, and variety.",

    "Cloud computing is the on-demand availability of computer system resources, especially data storage and computing power, without direct active management by the user. It relies on sharing of resources to achieve coherence and economies of scale.",
]

SUPPORTED_EXTENSIONS = (".txt", ".md", ".pdf")


class DocumentSource(ABC):
    """Anything that yields ``Document`` objects when iterated."""

    @abstractmethod
    def __iter__(self) -> Iterator[Document]:
        ...


class SampleDocuments(DocumentSource):
    def __init__(self, texts: Optional[List[str]] = None):
        self.texts = SAMPLE_TEXTS if texts is None else texts

    def __iter__(self):
        for i, text in enumerate(self.texts, 1):
            yield Document(source=f"sample-{i:02d}", text=text)

    def __len__(self):
        return len(self.texts)


def read_pdf(path: str) -> str:
    reader = PdfReader(path)
    return "\n".join(p.extract_text() or "" for p in reader.pages)


class FolderSource(DocumentSource):
    """Every .txt, .md and .pdf file directly inside ``folder``, in name order."""

    def __init__(self, folder: str):
        if not os.path.isdir(folder):
            raise ConfigurationError(f"Documents folder not found: {folder}")
        self.folder = folder

    def paths(self) -> List[str]:
        names = sorted(
            n for n in os.listdir(self.folder)
            if n.lower().endswith(SUPPORTED_EXTENSIONS)
        )
        return [os.path.join(self.folder, n) for n in names]

    def __iter__(self):
        for path in self.paths():
            name = os.path.basename(path)
            if name.lower().endswith(".pdf"):
                text = collapse_whitespace(read_pdf(path))
            else:
                with open(path, "r", encoding="utf-8") as f:
                    text = f.read()
            yield Document(source=name, text=text)


def load_documents(settings: Settings) -> DocumentSource:
    if settings.documents_dir:
        return FolderSource(settings.documents_dir)
    return SampleDocuments()
