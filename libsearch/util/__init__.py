# Package initialization for util module
