def _inject_otel_resource_attributes(resource: dict, metadata: dict) -> dict:
    enriched = dict(resource)
    enriched.update(
        {
            "relay.client.name": metadata["client_name"],
            "relay.client.execution.id": metadata["execution_id"],
            "relay.client.execution.pid": metadata["pid"],
            "relay.client.execution.host.name": metadata["host_name"],
            "relay.client.execution.host.ip": metadata["host_ip"],
            "relay.client.execution.start_time": metadata["execution_start_time"],
        }
    )
    return enriched
