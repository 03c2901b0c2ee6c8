"""Stage graph, gates, step execution and promotion for a pipeline run."""
