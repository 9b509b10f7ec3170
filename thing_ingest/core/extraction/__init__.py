from .value_extractor import ValueExtractor, extract, extract_float, format_number

__all__ = ["ValueExtractor", "extract", "extract_float", "format_number"]
