# Upload ingress: archive expansion and uploaded-file commit
