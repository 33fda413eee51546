"""Source Hunter: crawl YouTube comment threads and rank source identifications."""
