"""DocQA: hybrid lexical and vector retrieval for document question answering."""

__version__ = "1.0.0"
