"""Node feature labelling, resource topology reporting and topology garbage collection."""

__version__ = "0.1.0"