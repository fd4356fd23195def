# pipeline/__init__.py
# Fulfillment pipeline: engine, adapters and error taxonomy
