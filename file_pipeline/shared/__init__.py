"""Building blocks shared by the producer and consumer services."""
