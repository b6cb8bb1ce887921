# Domain services live under `apps/<domain>/app`.
