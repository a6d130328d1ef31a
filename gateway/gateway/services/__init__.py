"""Gateway services: OAuth exchange, webhook dispatch, provisioning and the function bridge."""
