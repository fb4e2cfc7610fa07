"""
Health App - network reachability and portal session monitoring

Responsibilities:
- TCP reachability probe of the portal host
- Debounced online/offline state with a stabilisation window
- Login state from the page's login indicator with miss hysteresis
  and a post-login quarantine
- Edge-triggered callbacks used to pause and resume collection
"""
