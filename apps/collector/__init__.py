"""
Collector App - periodic collection passes against the seller portal

Responsibilities:
- Cycle scheduling with at-most-one-in-flight passes and not-ready retry
- Product log of every listing seen (deduplicated by title and location)
- Keyword matching and notification of newly matched listings
- Matching configured product phrases and clicking their contact button
- Lead tracking from the message centre with merge-on-blank updates

Output:
- reports/products_log.json, keyword_matches.json, matchclick.json,
  messagecentre_log.json
- Notifications on the Redis notification channel
"""
