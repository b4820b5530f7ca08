from .models import Commodity, RawQuote, ResolvedPrice, SourceSpec
from .resolver import FallbackResolver

__all__ = ["Commodity", "FallbackResolver", "RawQuote", "ResolvedPrice", "SourceSpec"]
