"""
Lecture Notes Backend — API Routes Package
============================================

Route Inventory:
    - jobs.py:      POST /api/jobs                  (submit, 202)
                    GET  /api/jobs/{id}             (status + history)
                    POST /api/jobs/{id}/cancel      (cancel)
    - accounts.py:  GET  /api/accounts/{id}/usage   (usage meter)
    - webhooks.py:  POST /api/webhooks/subscription (tier changes)
    - health.py:    GET  /health                    (service health check)

Routes stay thin: they translate HTTP to service calls and back. Quota and
pipeline rules live in services/.
"""
