"""Pipeline configuration: stage graph, automation rule schemas, templates and the configuration store."""
