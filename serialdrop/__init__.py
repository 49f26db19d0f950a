"""serialdrop watches web serials and delivers new chapters to readers.

The service does four things:
1. Poll every tracked book's source for chapters (sources.fetcher)
2. Store genuinely new chapters and queue them per subscriber (pipeline.ingestor)
3. Group queued chapters per subscription and convert them (pipeline.batcher)
4. Deliver the converted artifact on each enabled channel (delivery.channels)

All outbound fetches share a per-domain token budget (pipeline.rate_limit).
"""

__version__ = "0.1.0"
