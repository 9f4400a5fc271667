import os

# Request logs are written to disk by default; keep test runs clean.
os.environ["VISION_GATEWAY_LOGGING"] = "false"
